import argparse
import json
import sys
from pathlib import Path

from packages.core.config import get_settings
from packages.core.logging import setup_logging

from .constants import DEFAULT_CATEGORY_PARENTS
from .reclassifier import paginate_sequence, reclassify_other, reclassify_two_phase


def load_corpus(path):
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Corpus must be a JSON object")
    training = data.get("training") or []
    other = data.get("other") or []
    parents = data.get("categories") or DEFAULT_CATEGORY_PARENTS
    return training, other, parents


def plan(args):
    try:
        training, other, parents = load_corpus(args.corpus)
    except (OSError, ValueError) as e:
        print(f"Error reading corpus: {e}", file=sys.stderr)
        return 1

    settings = get_settings()
    options = dict(
        parents=parents,
        settings=settings,
        min_confidence=args.min_conf,
        min_margin=args.min_margin,
        min_docs=args.min_docs,
        page_size=args.page_size,
    )
    fetch_page = paginate_sequence(other)

    if args.two_phase:
        outcome = reclassify_two_phase(training, fetch_page, **options)
        would_update = len(outcome.proposals)
        details = outcome.to_dict()
    else:
        outcome = reclassify_other(training, fetch_page, force=args.force, **options)
        would_update = outcome.updated
        details = outcome.to_dict()

    summary = {
        "mode": "dry_run",
        "other_before": len(other),
        "would_update": would_update,
        "other_after_estimate": max(0, len(other) - would_update),
        "force": args.force,
        "two_phase": args.two_phase,
        "min_conf": args.min_conf if args.min_conf is not None else settings.RECLASSIFY_MIN_CONFIDENCE,
        "min_margin": args.min_margin if args.min_margin is not None else settings.RECLASSIFY_MIN_MARGIN,
        "min_docs": args.min_docs if args.min_docs is not None else settings.RECLASSIFY_MIN_DOCS,
        "result": details,
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Plan auto-reclassification of the Other bucket")
    parser.add_argument("corpus", type=str, help="JSON file with training, other and categories")
    parser.add_argument("--force", action="store_true", help="Skip thresholds, collapse to top-level")
    parser.add_argument("--two-phase", action="store_true", help="Safe pass, then force if needed")
    parser.add_argument("--min-conf", type=float, default=None)
    parser.add_argument("--min-margin", type=float, default=None)
    parser.add_argument("--min-docs", type=int, default=None)
    parser.add_argument("--page-size", type=int, default=None)
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.LOG_JSON)
    return plan(args)


if __name__ == "__main__":
    sys.exit(main())
