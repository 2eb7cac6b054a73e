import argparse
import sys
import time
from pathlib import Path

import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from notifywise.api import record_outcome  # noqa: E402
from notifywise.config import settings  # noqa: E402
from notifywise.db import SessionLocal  # noqa: E402
from notifywise.gateway import build_gateway  # noqa: E402
from notifywise.logging_config import setup_logging  # noqa: E402
from notifywise.models import utc_now_naive  # noqa: E402
from notifywise.notifications import NotificationDispatcher  # noqa: E402

logger = structlog.get_logger("notifywise.worker")


def process_once(
    db,
    gateway,
    batch_size: int,
    retry_failed: bool = False,
    backoff_seconds: int | None = None,
    clock=None,
) -> dict:
    dispatcher = NotificationDispatcher(db, gateway, clock=clock or utc_now_naive)
    limit = max(1, min(int(batch_size), 500))
    result = {"processed": 0, "sent": 0, "failed": 0, "retried": 0}
    attempted = set()

    for message in dispatcher.due_pending_messages(limit):
        settled = dispatcher.send_pending(message.business_id, message.id)
        record_outcome(db, settled)
        attempted.add(settled.id)
        result["processed"] += 1
        result["sent" if settled.status == "sent" else "failed"] += 1

    if retry_failed:
        retryable = dispatcher.retryable_messages(
            limit, backoff_seconds=backoff_seconds, exclude_ids=attempted
        )
        for message in retryable:
            settled = dispatcher.retry(message.business_id, message.id)
            record_outcome(db, settled)
            result["processed"] += 1
            result["retried"] += 1
            result["sent" if settled.status == "sent" else "failed"] += 1
    return result


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send due scheduled notifications and retry failed ones"
    )
    parser.add_argument("--batch-size", type=int, default=settings.NOTIFICATION_WORKER_BATCH_SIZE)
    parser.add_argument("--poll-seconds", type=float, default=5.0)
    parser.add_argument("--once", action="store_true")
    parser.add_argument("--retry-failed", action="store_true")
    parser.add_argument(
        "--backoff-seconds", type=int, default=settings.NOTIFICATION_RETRY_BACKOFF_SECONDS
    )
    args = parser.parse_args()

    setup_logging()
    gateway = build_gateway()
    try:
        while True:
            with SessionLocal() as db:
                result = process_once(
                    db,
                    gateway,
                    args.batch_size,
                    retry_failed=args.retry_failed,
                    backoff_seconds=args.backoff_seconds,
                )
            logger.info("worker_batch_done", **result)
            if args.once:
                return 0
            if int(result.get("processed", 0)) == 0:
                time.sleep(max(0.2, float(args.poll_seconds)))
    finally:
        close = getattr(gateway, "close", None)
        if close is not None:
            close()


if __name__ == "__main__":
    raise SystemExit(main())
