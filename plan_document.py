"""
Parse a gazette file and print its extraction plan.

Usage:
    python plan_document.py NN_2024_152.html
    python plan_document.py zakon.txt --content-class text --document-id nn-2024-152
    python plan_document.py zakon.md --max-chunk-bytes 4000 --jobs
"""

import sys
import json
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

_SUFFIX_CLASSES = {".html": "html", ".htm": "html", ".md": "markdown"}


def main(argv=None) -> int:
    from execution.regulatory_truth.chunker import ChunkPlanConfig, ChunkPlanner
    from execution.regulatory_truth.document_parser import CONTENT_CLASSES, ParseIntegrityError, StructuralParser
    from execution.regulatory_truth.language_config import LanguageConfig

    parser = argparse.ArgumentParser(description="Parse a gazette document and plan extraction jobs")
    parser.add_argument("path", type=Path)
    parser.add_argument("--content-class", choices=CONTENT_CLASSES, default=None)
    parser.add_argument("--document-id", default=None)
    parser.add_argument("--language", default=None)
    parser.add_argument("--max-chunk-bytes", type=int, default=None)
    parser.add_argument("--jobs", action="store_true", help="Include job texts in the output")
    args = parser.parse_args(argv)

    if not args.path.exists():
        logger.error(f"File not found: {args.path}")
        return 1

    content_class = args.content_class or _SUFFIX_CLASSES.get(args.path.suffix.lower(), "text")
    config = ChunkPlanConfig.from_env()
    if args.max_chunk_bytes:
        config.max_chunk_bytes = args.max_chunk_bytes
    if args.language:
        config.language = args.language

    language_config = LanguageConfig.for_language(config.language)
    planner = ChunkPlanner(config, language_config=language_config, parser=StructuralParser(language_config=language_config))
    document_id = args.document_id or args.path.stem

    raw = args.path.read_text(encoding="utf-8")
    try:
        parsed = planner.parser.parse(raw, content_class)
    except ParseIntegrityError as e:
        logger.error(f"Parse failed closed with {len(e.violations)} violations")
        print(json.dumps([v.to_dict() for v in e.violations], indent=2, ensure_ascii=False))
        return 2

    plan = planner.plan(document_id, parsed)
    output = {
        "identity": parsed.identity(),
        "metadata": parsed.metadata.to_dict(),
        "stats": parsed.stats,
        "warnings": parsed.warnings,
        "summary": plan.summary.to_dict(),
    }
    if args.jobs:
        output["jobs"] = [job.to_dict() for job in plan.jobs]
    else:
        output["jobs"] = [
            {"node_path": j.node_path, "level": j.level, "size_bytes": j.size_bytes} for j in plan.jobs
        ]
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
