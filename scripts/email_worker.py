from __future__ import annotations

from arq.worker import run_worker

from mailcourier.core.logging import configure_logging
from mailcourier.workers.email_worker import WorkerSettings


def main() -> None:
    # Run the delivery consumer; concurrency follows EMAIL_PREFETCH_COUNT.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
