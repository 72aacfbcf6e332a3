from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from shobdotori.errors import InvalidInputError
from shobdotori.models import Sentence
from shobdotori.progress_store import ProgressStore
from shobdotori.runtime_paths import RUNTIME_DB_PATH
from shobdotori.tracker import DialectTracker

logger = logging.getLogger(__name__)


def _read_json_list(path: Path) -> list[dict[str, Any]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise InvalidInputError(f"{path} must contain a JSON array")
    return [item for item in payload if isinstance(item, dict)]


def load_sentences(path: Path) -> list[Sentence]:
    sentences: list[Sentence] = []
    for item in _read_json_list(path):
        raw_id = item.get("sentenceId", item.get("id"))
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise InvalidInputError(f"sentence entry without integer id: {item!r}")
        sentences.append(Sentence(id=raw_id, text=str(item.get("text") or "")))
    return sentences


def load_dialects(path: Path) -> list[dict[str, str]]:
    dialects: list[dict[str, str]] = []
    for item in _read_json_list(path):
        code = str(item.get("code") or "").strip()
        name = str(item.get("name") or "").strip()
        if not code or not name:
            raise InvalidInputError(f"dialect entry requires code and name: {item!r}")
        dialects.append({"code": code, "name": name, "label": str(item.get("label") or name)})
    return dialects


def seed(
    store: ProgressStore,
    *,
    sentences_path: Path | None,
    dialects_path: Path | None,
    force: bool = False,
) -> dict[str, int]:
    if force:
        store.purge_all()

    seeded_sentences = 0
    if sentences_path is not None:
        seeded_sentences = store.seed_sentences(load_sentences(sentences_path))

    initialized = 0
    if dialects_path is not None:
        tracker = DialectTracker(store)
        for dialect in load_dialects(dialects_path):
            tracker.init_dialect(dialect["code"], dialect["name"], dialect["label"])
            initialized += 1

    return {"sentences": seeded_sentences, "dialects": initialized}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load or wipe the sentence catalog and dialect progress.")
    parser.add_argument(
        "--db",
        default=str(RUNTIME_DB_PATH),
        help="SQLite database path. Defaults to the runtime directory.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    seed_parser = subparsers.add_parser("seed", help="Seed sentences and initialise dialects.")
    seed_parser.add_argument("--sentences", default=None, help="JSON array of {sentenceId, text}.")
    seed_parser.add_argument("--dialects", default=None, help="JSON array of {code, name, label}.")
    seed_parser.add_argument(
        "--force",
        action="store_true",
        help="Purge recordings, dialects and sentences before seeding.",
    )

    subparsers.add_parser("clean", help="Delete all recordings, dialects and sentences.")
    subparsers.add_parser("reconcile", help="Repair progress that disagrees with the recording ledger.")
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    args = _build_parser().parse_args(argv)
    store = ProgressStore(Path(args.db).expanduser())

    try:
        if args.command == "seed":
            if args.sentences is None and args.dialects is None:
                print("nothing to seed: pass --sentences and/or --dialects", file=sys.stderr)
                return 2
            result = seed(
                store,
                sentences_path=Path(args.sentences) if args.sentences else None,
                dialects_path=Path(args.dialects) if args.dialects else None,
                force=args.force,
            )
            print(f"seeded sentences={result['sentences']} dialects={result['dialects']}")
        elif args.command == "clean":
            before = store.counts()
            if not any(before.values()):
                print("database is already clean")
                return 0
            deleted = store.purge_all()
            print(
                "deleted "
                + " ".join(f"{name}={count}" for name, count in deleted.items())
            )
        else:
            reports = DialectTracker(store).reconcile()
            for report in reports:
                if report.changed:
                    print(
                        f"{report.dialect_code}: replayed={report.replayed} "
                        f"cleared={report.cleared} status_fixed={report.status_fixed}"
                    )
            print(f"reconciled dialects={len(reports)}")
    except (InvalidInputError, OSError, json.JSONDecodeError) as exc:
        logger.error("seed_command_failed command=%s error=%s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
