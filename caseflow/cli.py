"""Operator command line for the production ingestion client.

  caseflow template OUT.xlsx
  caseflow check FILE
  caseflow ingest FILE --shipment S1 [--shipment S2 ...]
  caseflow delete --shipment S1 (--case C1 ... | --all)
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path

from caseflow.core.config import settings
from caseflow.schemas.production import WILDCARD, DeletionPayload
from caseflow.services.production_api_client import ProductionApiClient
from caseflow.services.production_errors import IngestionFailure
from caseflow.services.production_ingestion_service import ProductionIngestionService, prepare_batch
from caseflow.services.production_workbook_service import IncomingFile, build_template_workbook
from caseflow.services.upload_transport import default_upload_transport

logger = logging.getLogger("caseflow.cli")


def _read_incoming(path: str) -> IncomingFile:
    source = Path(path)
    content_type, _ = mimetypes.guess_type(source.name)
    return IncomingFile(
        filename=source.name,
        content=source.read_bytes(),
        content_type=content_type or "application/octet-stream",
    )


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _print_progress(percent: int) -> None:
    print(f"\rupload {percent:3d}%", end="", file=sys.stderr, flush=True)
    if percent >= 100:
        print(file=sys.stderr)


def cmd_template(args: argparse.Namespace) -> int:
    Path(args.out).write_bytes(build_template_workbook())
    print(f"template written to {args.out}")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    batch = prepare_batch(_read_incoming(args.file))
    _print_json(
        {
            "fileName": batch.file_name,
            "sheetName": batch.sheet_name,
            "validCount": len(batch.records),
            "errorCount": len(batch.errors),
            "errors": [error.to_wire() for error in batch.row_errors()],
        }
    )
    return 0 if batch.records else 1


def cmd_ingest(args: argparse.Namespace) -> int:
    client = ProductionApiClient(args.api_url)
    service = ProductionIngestionService(
        client=client,
        transport=default_upload_transport(args.api_url),
    )
    incoming = _read_incoming(args.file)
    batch = service.prepare(incoming)
    if batch.errors:
        logger.warning(
            "production_rows_skipped file=%s rows=%s",
            batch.file_name,
            ",".join(str(row) for row in sorted(batch.errors)),
        )
    selection = client.fetch_shipment_states(args.shipment)
    outcome = service.confirm(batch, incoming, selection, on_progress=_print_progress)
    _print_json(
        {
            "result": outcome.result.to_wire(),
            "lastUpload": outcome.last_upload.to_wire(),
            "fileUrl": outcome.meta.file_url,
        }
    )
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    client = ProductionApiClient(args.api_url)
    cases = [WILDCARD] if args.all else list(args.case)
    payload = DeletionPayload(shipments={shipment_id: cases for shipment_id in args.shipment})
    _print_json(client.delete(payload).to_wire())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="caseflow", description="Production case ingestion client")
    parser.add_argument(
        "--api-url",
        default=settings.PRODUCTION_API_URL,
        help="Processing backend base URL",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    template = sub.add_parser("template", help="Write the blank upload template")
    template.add_argument("out")
    template.set_defaults(func=cmd_template)

    check = sub.add_parser("check", help="Parse and validate a file without submitting")
    check.add_argument("file")
    check.set_defaults(func=cmd_check)

    ingest = sub.add_parser("ingest", help="Validate, archive and submit a file")
    ingest.add_argument("file")
    ingest.add_argument("--shipment", action="append", required=True)
    ingest.set_defaults(func=cmd_ingest)

    delete = sub.add_parser("delete", help="Delete production cases")
    delete.add_argument("--shipment", action="append", required=True)
    target = delete.add_mutually_exclusive_group(required=True)
    target.add_argument("--case", action="append")
    target.add_argument("--all", action="store_true", help="Remove every case of the shipment")
    delete.set_defaults(func=cmd_delete)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        return args.func(args)
    except IngestionFailure as exc:
        logger.error("caseflow_command_failed command=%s code=%s message=%s", args.command, exc.code, exc.message)
        _print_json(exc.to_detail())
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
