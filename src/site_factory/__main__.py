"""Entry point for `python -m site_factory` and the `site-factory` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from site_factory.errors import BuildValidationError, SessionBusyError
from site_factory.models import PipelineEvent
from site_factory.service import SiteFactoryService
from site_factory.settings import RuntimeSettings
from site_factory.vfs import diff_file_maps


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a site from one or more prompts in a fresh session")
    parser.add_argument("prompts", nargs="+", help="Prompts to apply in order; each produces a new version")
    parser.add_argument("--user-id", default="anonymous", help="Owner recorded on the session")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Write the last valid version's files here when the run finishes",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args()


def print_event(event: PipelineEvent) -> None:
    print(json.dumps({"type": event.type, **event.data}, default=str))


def export_files(files: dict[str, str], output_dir: Path) -> None:
    for path, content in files.items():
        target = output_dir / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    service = SiteFactoryService(settings=settings, event_sink=print_event)
    try:
        session = service.create_session(args.user_id)
        print(f"session_id={session.id}")
        previous: dict[str, str] = {}
        for prompt in args.prompts:
            try:
                version_id = service.submit_prompt(session.id, prompt)
            except (BuildValidationError, SessionBusyError) as exc:
                logging.error("Prompt failed: %s", exc)
                continue
            except Exception as exc:  # noqa: BLE001
                logging.exception("Pipeline execution failed: %s", exc)
                return 1
            files = dict(service.load_version(session.id, version_id).files)
            for change in diff_file_maps(previous, files):
                print(f"{change.change_type.value}: {change.path}")
            previous = files

        preview = service.preview_version(session.id)
        if preview is None:
            print("last_valid_version=None")
            return 1
        print(f"last_valid_version={preview.id}")
        if args.output_dir is not None:
            export_files(dict(preview.files), args.output_dir)
        return 0
    finally:
        service.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
