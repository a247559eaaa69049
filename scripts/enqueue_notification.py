from __future__ import annotations

import argparse
import asyncio
import json
from uuid import uuid4

from mailcourier.core.logging import configure_logging
from mailcourier.domain.models import NotificationRequest
from mailcourier.services.queue import enqueue_email_notification


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish one email notification request onto the queue.")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--template-code", required=True)
    parser.add_argument("--request-id", default=None, help="Idempotency key; a random one is generated if omitted.")
    parser.add_argument("--variables", default="{}", help="JSON object of template variables.")
    parser.add_argument("--priority", type=int, default=0)
    parser.add_argument("--defer-ms", type=int, default=0)
    return parser.parse_args()


async def _main() -> None:
    configure_logging()
    args = _parse_args()
    request = NotificationRequest(
        request_id=args.request_id or uuid4().hex,
        user_id=args.user_id,
        template_code=args.template_code,
        variables=json.loads(args.variables),
        priority=args.priority,
    )
    job_id = await enqueue_email_notification(request, defer_ms=args.defer_ms)
    print(json.dumps({"job_id": job_id, "request_id": request.request_id, "enqueued": job_id is not None}))
    if job_id is None:
        # arq refuses a job id that is still queued or retained as a result.
        raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(_main())
