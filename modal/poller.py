"""Scheduled email ingestion - one poll of the configured mailbox per tick."""

import logging
import sys
from pathlib import Path

import modal

# Create Modal app
app = modal.App("billmail-poller")

# Create image with all dependencies
image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install(
        "psycopg[binary]==3.2.3",
        "boto3==1.41.2",
        "openai==1.59.5",
        "pydantic==2.12.4",
        "requests==2.32.3",
    )
    .add_local_dir(Path(__file__).parent.parent / "src" / "billmail", "/root/billmail")
)

# Modal secrets
secrets = [modal.Secret.from_name("billmail-secrets")]

logger = logging.getLogger(__name__)


@app.function(
    image=image,
    secrets=secrets,
    schedule=modal.Period(minutes=5),
    timeout=1800,
)
def poll() -> dict:
    """Process mail that arrived since the last run.

    Returns:
        dict: FetchResult summary (details omitted)
    """
    sys.path.insert(0, "/root")

    from billmail.config import Config
    from billmail.service import IngestionService

    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger(__name__)

    config = Config.from_env()
    service = IngestionService.from_config(config)

    try:
        result = service.poll_once()
    finally:
        service.close()

    logger.info(
        f"Poll of {result.mailbox} complete: {result.ingested} ingested, "
        f"{result.ignored} ignored, {result.failed} failed"
    )
    return result.model_dump(exclude={"details"})


@app.function(
    image=image,
    secrets=secrets,
    timeout=7200,
)
def backfill(days: int = 7, force: bool = False) -> dict:
    """Process the last `days` days of mail."""
    sys.path.insert(0, "/root")

    from billmail.config import Config
    from billmail.service import IngestionService

    logging.basicConfig(level=logging.INFO)

    service = IngestionService.from_config(Config.from_env())
    try:
        result = service.backfill(days=days, force=force)
    finally:
        service.close()
    return result.model_dump(exclude={"details"})


@app.local_entrypoint()
def main(days: int = 0, force: bool = False):
    """Run once from the command line.

    Usage:
        modal run modal/poller.py
        modal run modal/poller.py --days 30
    """
    if days > 0:
        result = backfill.remote(days=days, force=force)
    else:
        result = poll.remote()

    print("\n" + "=" * 80)
    print("RESULT")
    print("=" * 80)
    for key, value in result.items():
        print(f"  {key}: {value}")
