# ================================================================
# cli.py
# ----------------------------------------------------------------
# Operator CLI over the same ServiceContext the HTTP app uses.
#
#   qna-search run     [--group G]          pull → ingest → index → push
#   qna-search pull | push                   mirror all roots
#   qna-search match   "text" [--group G] [-k N]
#   qna-search delete  "question" [--group G]
#   qna-search rebuild [--group G] [--capacity N]
#   qna-search stats   [--group G]
#
# Exit code 1 on any service error, 2 on a busy pipeline.
# ================================================================

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from .context import build_context
from .errors import PipelineBusy, QnaSearchError
from .ingest.pipeline import Pipeline
from .search import Retriever
from .settings import Settings, configure_logging

logger = logging.getLogger(__name__)


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qna-search", description="QnA search maintenance CLI.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run the ingestion pipeline for a group.")
    p.add_argument("--group", default=None)

    sub.add_parser("pull", help="Mirror the object store into the local roots.")
    sub.add_parser("push", help="Mirror the local roots into the object store.")

    p = sub.add_parser("match", help="Query a group.")
    p.add_argument("sentence")
    p.add_argument("--group", default=None)
    p.add_argument("-k", "--neighbors", type=int, default=None)

    p = sub.add_parser("delete", help="Delete a question from a group.")
    p.add_argument("question")
    p.add_argument("--group", default=None)

    p = sub.add_parser("rebuild", help="Compact tombstones, optionally with a new capacity.")
    p.add_argument("--group", default=None)
    p.add_argument("--capacity", type=int, default=None)

    p = sub.add_parser("stats", help="Print index statistics.")
    p.add_argument("--group", default=None)
    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or Settings()
    configure_logging(args.log_level or settings.LOG_LEVEL)

    ctx = build_context(settings)
    pipeline = Pipeline(ctx)
    group = getattr(args, "group", None) or settings.DEFAULT_GROUP
    try:
        if args.command == "run":
            result = pipeline.run(group)
            _print({
                "group": result.group_id,
                "records": result.records,
                "files": result.files,
                "rejected": result.rejected,
                "pulled": result.pulled,
                "pushed": result.pushed,
                "elapsed": round(result.elapsed, 3),
            })
        elif args.command == "pull":
            _print({k: r.summary() for k, r in pipeline.pull_all().items()})
        elif args.command == "push":
            _print({k: r.summary() for k, r in pipeline.push_all().items()})
        elif args.command == "match":
            k = args.neighbors or settings.DEFAULT_NEIGHBORS
            result = Retriever(ctx).retrieve(args.sentence, group, k)
            _print([{"question": m.question, "answer": m.answer, "distance": m.distance} for m in result.matches])
        elif args.command == "delete":
            row_id = pipeline.delete_entry(group, args.question)
            if row_id is not None:
                pipeline.push_index()
            _print({"deleted": row_id})
        elif args.command == "rebuild":
            if not ctx.indexes.exists(group):
                print(f"ERROR: Indexing does not exist: {group}", file=sys.stderr)
                return 1
            with ctx.sync_lock:
                handle = ctx.indexes.rebuild(ctx.indexes.ensure(group), capacity=args.capacity)
            pipeline.push_index()
            _print(ctx.indexes.stats(handle))
        elif args.command == "stats":
            if not ctx.indexes.exists(group):
                print(f"ERROR: Indexing does not exist: {group}", file=sys.stderr)
                return 1
            out = ctx.indexes.stats(ctx.indexes.ensure(group))
            out["rows"] = ctx.metadata.count(group)
            _print(out)
    except PipelineBusy as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (QnaSearchError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
