from mailcourier.apps.health.app import create_app, load_port
from mailcourier.apps.health.server import EmbeddedHealthServer

__all__ = ["EmbeddedHealthServer", "create_app", "load_port"]
