"""Generate embeddings for knowledge base entries that have none.

Every ``knowledge_base`` row whose ``embedding`` is null is embedded from its
``embedding_text`` with the configured Gemini embedding model, then updated in
place. Entries that fail are logged and skipped; a short delay between calls
keeps the job under the provider's rate limits.

Usage:
    SUPABASE_URL=... SUPABASE_SERVICE_ROLE_KEY=... GEMINI_API_KEY=... \
    python scripts/generate_embeddings.py [--delay 0.2]
"""
from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from app.config import Settings
from app.errors import GymDeskError
from app.services.ai_service import AIService
from app.services.knowledge_base import KnowledgeBaseService
from app.services.supabase_client import create_supabase_client

logger = logging.getLogger("generate_embeddings")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--delay",
        type=float,
        default=0.2,
        help="Seconds to wait between embedding calls (default: 0.2)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    load_dotenv()
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    missing = [
        name
        for name, value in (
            ("SUPABASE_URL", settings.supabase_url),
            ("SUPABASE_SERVICE_ROLE_KEY", settings.supabase_service_role_key),
            ("GEMINI_API_KEY", settings.api_key),
        )
        if not value
    ]
    if missing:
        logger.error("Missing required environment variables: %s", ", ".join(missing))
        return 1

    knowledge_base = KnowledgeBaseService(
        create_supabase_client(settings, service_role=True),
        AIService(settings),
    )
    try:
        result = knowledge_base.generate_missing_embeddings(delay_seconds=args.delay)
    except GymDeskError as exc:
        logger.error("Embedding job failed: %s", exc.message)
        return 1

    print(f"Processed {result['processed']} entries ({result['failed']} failed).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
