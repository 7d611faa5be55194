"""Command-line interface for batch intake, single extraction and benchmarks.

Subcommands:

- ``process``: run a folder of documents into the review queue and write a
  CSV summary of the resulting cases.
- ``extract``: run one document and print its resolved record and
  validation result as JSON.
- ``benchmark``: compare predictions against ground truth and report field
  accuracy and calibration.
"""

import argparse
import csv
import json
import sys
import time
from pathlib import Path

from invoice_intake.benchmark.evaluator import Evaluator, load_ground_truth, load_predictions
from invoice_intake.errors import InvoiceIntakeError
from invoice_intake.pipeline import InvoicePipeline
from invoice_intake.utils.config import load_config
from invoice_intake.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

MIME_BY_SUFFIX = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".bmp": "image/bmp",
}
_META_COLUMNS = [
    "filename",
    "status",
    "case_id",
    "state",
    "confidence",
    "warnings",
    "hard_failures",
    "ocr_state",
    "processing_time_s",
    "error",
]


def _find_documents(input_dir: Path) -> list[Path]:
    """Find all supported document files in a directory.

    Args:
        input_dir: Directory to scan for documents.

    Returns:
        Sorted list of document file paths.
    """
    return sorted(
        p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in MIME_BY_SUFFIX
    )


def mime_type_for(path: Path) -> str:
    try:
        return MIME_BY_SUFFIX[path.suffix.lower()]
    except KeyError:
        raise ValueError(f"Unsupported file extension: {path.suffix}") from None


def process_folder(
    pipeline: InvoicePipeline,
    input_dir: Path,
    output_csv: Path,
    vendor_id: str | None = None,
    profile: str | None = None,
    verbose: bool = False,
) -> dict[str, int]:
    """Process all documents in a folder into review cases.

    Args:
        pipeline: Configured pipeline.
        input_dir: Directory containing document files.
        output_csv: Path for the review-queue CSV summary.
        vendor_id: Vendor applied to every document, if known.
        profile: OCR profile name.
        verbose: Whether to print per-file progress.

    Returns:
        Summary dict with total, successful, and failed counts.
    """
    files = _find_documents(input_dir)
    if not files:
        logger.warning("No documents found in %s", input_dir)
        return {"total": 0, "successful": 0, "failed": 0}

    logger.info("Found %d documents to process", len(files))

    rows: list[dict[str, object]] = []
    successful = 0
    failed = 0

    for i, file_path in enumerate(files, 1):
        if verbose:
            print(f"Processing [{i}/{len(files)}]: {file_path.name}")

        start_time = time.time()
        try:
            case = pipeline.process(
                file_path.read_bytes(),
                mime_type_for(file_path),
                document_id=file_path.stem,
                vendor_id=vendor_id,
                profile=profile,
            )
        except (InvoiceIntakeError, OSError) as exc:
            logger.error("Failed to process %s: %s", file_path.name, exc)
            rows.append({"filename": file_path.name, "status": "failed", "error": str(exc)})
            failed += 1
            continue

        row: dict[str, object] = {"filename": file_path.name, "status": "queued"}
        row.update(case.summary())
        for name, resolved in sorted(case.record.fields.items()):
            if isinstance(resolved.value, str):
                row[name] = resolved.value
        row["processing_time_s"] = round(time.time() - start_time, 2)
        rows.append(row)
        successful += 1

    _write_csv(rows, output_csv)
    logger.info("Results written to %s", output_csv)

    summary = {"total": len(files), "successful": successful, "failed": failed}
    _print_summary(summary, pipeline.queue.stats().to_dict(), output_csv)
    return summary


def _write_csv(rows: list[dict[str, object]], output_path: Path) -> None:
    """Write one row per document to a CSV file.

    Args:
        rows: List of row dictionaries.
        output_path: Path for the output CSV file.
    """
    if not rows:
        return

    all_keys: set[str] = set()
    for r in rows:
        all_keys.update(r.keys())

    field_columns = sorted(all_keys - set(_META_COLUMNS))
    columns = [c for c in _META_COLUMNS if c in all_keys] + field_columns

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def _print_summary(summary: dict[str, int], stats: dict, output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Intake Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Queued:     {summary['successful']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Warnings:   {stats['with_warnings']}")
    print(f"Blocked:    {stats['with_hard_failures']}")
    print(f"Mean conf.: {stats['mean_confidence']:.3f}")
    print(f"Output:     {output_csv}")


def extract_single(
    pipeline: InvoicePipeline,
    file_path: Path,
    vendor_id: str | None = None,
    profile: str | None = None,
) -> dict[str, object]:
    """Process a single document and return its record and validation.

    Args:
        pipeline: Configured pipeline.
        file_path: Path to the document file.
        vendor_id: Vendor of the document, if known.
        profile: OCR profile name.

    Returns:
        Dictionary with filename, record, validation and OCR statistics.
    """
    outcome = pipeline.extract(
        file_path.read_bytes(),
        mime_type_for(file_path),
        document_id=file_path.stem,
        vendor_id=vendor_id,
        profile=profile,
    )
    result: dict[str, object] = {"filename": file_path.name}
    result.update(outcome.to_dict())
    return result


def _add_pipeline_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--vendor", dest="vendor_id", help="Vendor id of the documents")
    parser.add_argument("--profile", help="OCR profile (default from config)")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        prog="invoice-intake",
        description="Invoice extraction-to-approval pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Config file (default: configs/config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    process_parser = subparsers.add_parser(
        "process", help="Process a folder of documents into the review queue"
    )
    process_parser.add_argument("input_dir", type=Path, help="Input directory with documents")
    process_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("review_queue.csv"),
        help="Output CSV file (default: review_queue.csv)",
    )
    _add_pipeline_options(process_parser)
    process_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    single_parser = subparsers.add_parser("extract", help="Process a single document")
    single_parser.add_argument("file", type=Path, help="Document file to process")
    single_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")
    _add_pipeline_options(single_parser)

    bench_parser = subparsers.add_parser(
        "benchmark", help="Compare predictions against ground truth"
    )
    bench_parser.add_argument(
        "predictions", type=Path, help="Predictions JSON file or directory of extract outputs"
    )
    bench_parser.add_argument("ground_truth", type=Path, help="Ground truth JSON or CSV")
    bench_parser.add_argument("-o", "--output", type=Path, help="Report file")
    bench_parser.add_argument(
        "--buckets", type=int, default=10, help="Confidence buckets (default: 10)"
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level)

    if args.command == "benchmark":
        for path in (args.predictions, args.ground_truth):
            if not path.exists():
                print(f"Error: {path} does not exist", file=sys.stderr)
                sys.exit(1)
        evaluator = Evaluator(bucket_count=args.buckets)
        result = evaluator.evaluate(
            load_predictions(args.predictions), load_ground_truth(args.ground_truth)
        )
        print(evaluator.generate_report(result, args.output))
        return

    if args.command == "process" and not args.input_dir.is_dir():
        print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
        sys.exit(1)
    if args.command == "extract" and not args.file.exists():
        print(f"Error: {args.file} does not exist", file=sys.stderr)
        sys.exit(1)

    pipeline = InvoicePipeline(config)
    try:
        if args.command == "process":
            process_folder(
                pipeline,
                args.input_dir,
                args.output,
                vendor_id=args.vendor_id,
                profile=args.profile,
                verbose=args.verbose,
            )
        else:
            try:
                result = extract_single(pipeline, args.file, args.vendor_id, args.profile)
            except (InvoiceIntakeError, ValueError) as exc:
                print(f"Error: {exc}", file=sys.stderr)
                sys.exit(1)
            output_str = json.dumps(result, indent=2, default=str)
            if args.output:
                args.output.parent.mkdir(parents=True, exist_ok=True)
                args.output.write_text(output_str)
                print(f"Output written to {args.output}")
            else:
                print(output_str)
    finally:
        pipeline.close()


if __name__ == "__main__":
    main()
