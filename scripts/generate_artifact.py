#!/usr/bin/env python3
"""
Run the derived-asset pipeline for one artifact, in-process.

Produces the text, audio and video assets of a completed artifact without
going through the job queue. Useful for backfills and for debugging a
stage that keeps failing in the worker.

PREREQUISITES:
- DATABASE_URL, S3 and OpenAI settings in the environment or .env
- The artifact must be completed

EXAMPLES:
    python scripts/generate_artifact.py 0b6f1c1e-8f0e-4a4e-9d55-3b7f0c2a9e11
    python scripts/generate_artifact.py <artifact_id> --skip-video
    python scripts/generate_artifact.py <artifact_id> --reset --verbose
"""

import argparse
import json
import logging
import sys
from uuid import UUID

from atelier.core.database import init_db
from atelier.core.exceptions import AtelierException
from atelier.services.derived_assets import DerivedAssetPipeline

logger = logging.getLogger("atelier.scripts.generate_artifact")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Generate derived assets for an artifact",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("artifact_id", type=UUID, help="Completed artifact UUID")
    parser.add_argument(
        "--skip-audio",
        action="store_true",
        help="Only produce the text asset",
    )
    parser.add_argument(
        "--skip-video",
        action="store_true",
        help="Stop after the audio asset",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Replace assets that already exist",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables first (local development)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.init_db:
        init_db()

    pipeline = DerivedAssetPipeline()
    try:
        outcomes = pipeline.run_all(
            args.artifact_id,
            reset=args.reset,
            skip_audio=args.skip_audio,
            skip_video=args.skip_video,
        )
    except AtelierException as e:
        logger.error(
            f"Derived asset generation failed: {e.message}",
            extra={"artifact_id": str(args.artifact_id), "details": e.details},
        )
        print(json.dumps(e.to_dict(), indent=2))
        return 1

    print(json.dumps([outcome.to_dict() for outcome in outcomes], indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
