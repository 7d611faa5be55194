"""Tests for the CLI batch, single-file and benchmark commands."""

import csv
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from helpers import FakeEngine, build_pdf, make_config, render_with_pymupdf, write_profiles

from invoice_intake.cli import (
    _find_documents,
    _print_summary,
    _write_csv,
    extract_single,
    main,
    mime_type_for,
    process_folder,
)
from invoice_intake.ocr.engine import EngineRegistry
from invoice_intake.pipeline import InvoicePipeline

RENDER = "invoice_intake.ingest.pdf_handler.convert_from_bytes"

INVOICE_PDF_ITEMS = [
    (50, 60, "Acme Supplies Ltd"),
    (50, 90, "Invoice Number: INV-2024-001"),
    (50, 105, "Invoice Date: 2024-03-15"),
    (350, 410, "Total: 182.05"),
]

STATS = {
    "total": 1,
    "by_state": {"pending": 1},
    "mean_confidence": 0.9512,
    "with_warnings": 0,
    "with_hard_failures": 0,
}


@pytest.fixture
def pipeline(tmp_path: Path):
    write_profiles(
        tmp_path / "ocr_profiles.yaml",
        [{"name": "standard", "max_concurrency": 1, "passes": [{"name": "block", "psm": 6}]}],
    )
    config = make_config(tmp_path, ingest={"detect_rotation": False, "deskew_enabled": False})
    pipeline = InvoicePipeline(config, registry=EngineRegistry([FakeEngine()]))
    yield pipeline
    pipeline.close()


class TestFindDocuments:
    """Tests for document discovery."""

    def test_find_supported_files(self, tmp_path: Path) -> None:
        for name in ("b.pdf", "a.png", "c.jpeg", "d.TIFF", "readme.txt"):
            (tmp_path / name).touch()
        (tmp_path / "nested.pdf").mkdir()
        files = _find_documents(tmp_path)
        assert [f.name for f in files] == ["a.png", "b.pdf", "c.jpeg", "d.TIFF"]

    def test_find_no_documents(self, tmp_path: Path) -> None:
        (tmp_path / "readme.txt").touch()
        assert _find_documents(tmp_path) == []


class TestMimeType:
    """Tests for mapping file extensions to MIME types."""

    @pytest.mark.parametrize(
        ("name", "mime"),
        [
            ("a.pdf", "application/pdf"),
            ("a.JPG", "image/jpeg"),
            ("a.tif", "image/tiff"),
            ("a.bmp", "image/bmp"),
        ],
    )
    def test_known_extensions(self, name: str, mime: str) -> None:
        assert mime_type_for(Path(name)) == mime

    def test_unknown_extension(self) -> None:
        with pytest.raises(ValueError, match="Unsupported file extension"):
            mime_type_for(Path("a.docx"))


class TestWriteCsv:
    """Tests for CSV writing."""

    def test_meta_columns_first_then_fields(self, tmp_path: Path) -> None:
        rows = [
            {"filename": "a.pdf", "status": "queued", "case_id": "a", "total": "1.00"},
            {"filename": "b.pdf", "status": "failed", "error": "boom"},
        ]
        output = tmp_path / "out" / "queue.csv"
        _write_csv(rows, output)

        with open(output) as f:
            reader = csv.DictReader(f)
            assert reader.fieldnames == ["filename", "status", "case_id", "error", "total"]
            written = list(reader)
        assert written[0]["total"] == "1.00"
        assert written[1]["error"] == "boom"

    def test_write_csv_empty_rows(self, tmp_path: Path) -> None:
        output = tmp_path / "queue.csv"
        _write_csv([], output)
        assert not output.exists()


class TestPrintSummary:
    """Tests for summary printing."""

    def test_print_summary(self, capsys: pytest.CaptureFixture[str]) -> None:
        _print_summary(
            {"total": 3, "successful": 2, "failed": 1},
            {**STATS, "with_warnings": 1},
            Path("queue.csv"),
        )
        out = capsys.readouterr().out
        assert "Total:      3" in out
        assert "Queued:     2" in out
        assert "Failed:     1" in out
        assert "Warnings:   1" in out
        assert "Mean conf.: 0.951" in out
        assert "queue.csv" in out


class TestProcessFolder:
    """Tests for batch intake into the review queue."""

    def test_process_folder(
        self, pipeline: InvoicePipeline, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        docs = tmp_path / "docs"
        docs.mkdir()
        (docs / "inv-1.pdf").write_bytes(build_pdf([INVOICE_PDF_ITEMS]))
        (docs / "scan.png").write_bytes(b"not a png")
        output = tmp_path / "queue.csv"

        with patch(RENDER, side_effect=render_with_pymupdf):
            summary = process_folder(pipeline, docs, output, verbose=True)

        assert summary == {"total": 2, "successful": 1, "failed": 1}
        assert "Processing [2/2]: scan.png" in capsys.readouterr().out
        with open(output) as f:
            rows = {row["filename"]: row for row in csv.DictReader(f)}
        assert rows["inv-1.pdf"]["status"] == "queued"
        assert rows["inv-1.pdf"]["case_id"] == "inv-1"
        assert rows["inv-1.pdf"]["state"] == "pending"
        assert rows["inv-1.pdf"]["total"] == "182.05"
        assert rows["scan.png"]["status"] == "failed"
        assert "Cannot decode image" in rows["scan.png"]["error"]
        assert pipeline.queue.get("inv-1") is not None

    def test_process_empty_folder(self, tmp_path: Path) -> None:
        mock_pipeline = MagicMock()
        summary = process_folder(mock_pipeline, tmp_path, tmp_path / "queue.csv")
        assert summary["total"] == 0
        mock_pipeline.process.assert_not_called()

    def test_vendor_and_profile_are_passed_through(self, tmp_path: Path) -> None:
        (tmp_path / "a.png").write_bytes(b"png")
        mock_pipeline = MagicMock()
        mock_pipeline.process.return_value.summary.return_value = {"case_id": "a"}
        mock_pipeline.process.return_value.record.fields = {}
        mock_pipeline.queue.stats.return_value.to_dict.return_value = STATS

        process_folder(
            mock_pipeline, tmp_path, tmp_path / "queue.csv", vendor_id="acme", profile="fast"
        )
        mock_pipeline.process.assert_called_once_with(
            b"png", "image/png", document_id="a", vendor_id="acme", profile="fast"
        )


class TestExtractSingle:
    """Tests for single-document extraction."""

    def test_extract_single(self, pipeline: InvoicePipeline, tmp_path: Path) -> None:
        path = tmp_path / "inv-1.pdf"
        path.write_bytes(build_pdf([INVOICE_PDF_ITEMS]))
        with patch(RENDER, side_effect=render_with_pymupdf):
            result = extract_single(pipeline, path)

        assert result["filename"] == "inv-1.pdf"
        assert result["record"]["document_id"] == "inv-1"
        assert result["record"]["fields"]["invoice_number"]["value"] == "INV-2024-001"
        assert result["validation"]["passed"] is True
        json.dumps(result, default=str)


class TestCLIMain:
    """Tests for the argument parser and command dispatch."""

    def test_no_command_shows_help(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 0

    def test_process_nonexistent_directory(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["process", "/nonexistent/path"])
        assert exc_info.value.code == 1
        assert "not a directory" in capsys.readouterr().err

    def test_extract_nonexistent_file(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["extract", "/nonexistent/file.png"])
        assert exc_info.value.code == 1
        assert "does not exist" in capsys.readouterr().err

    @patch("invoice_intake.cli.InvoicePipeline")
    @patch("invoice_intake.cli.process_folder")
    def test_process_command(
        self, mock_pf: MagicMock, mock_pipeline_cls: MagicMock, tmp_path: Path
    ) -> None:
        output = tmp_path / "out.csv"
        main(["process", str(tmp_path), "-o", str(output), "--vendor", "acme", "-v"])
        mock_pf.assert_called_once_with(
            mock_pipeline_cls.return_value,
            tmp_path,
            output,
            vendor_id="acme",
            profile=None,
            verbose=True,
        )
        mock_pipeline_cls.return_value.close.assert_called_once()

    @patch("invoice_intake.cli.InvoicePipeline")
    @patch("invoice_intake.cli.extract_single")
    def test_extract_writes_output(
        self, mock_extract: MagicMock, mock_pipeline_cls: MagicMock, tmp_path: Path
    ) -> None:
        doc = tmp_path / "a.pdf"
        doc.touch()
        mock_extract.return_value = {"filename": "a.pdf", "record": {"fields": {}}}
        output = tmp_path / "json" / "a.json"

        main(["extract", str(doc), "-o", str(output), "--profile", "thorough"])
        mock_extract.assert_called_once_with(
            mock_pipeline_cls.return_value, doc, None, "thorough"
        )
        assert json.loads(output.read_text())["filename"] == "a.pdf"

    @patch("invoice_intake.cli.InvoicePipeline")
    def test_extract_unsupported_extension(
        self, mock_pipeline_cls: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        doc = tmp_path / "a.docx"
        doc.touch()
        with pytest.raises(SystemExit) as exc_info:
            main(["extract", str(doc)])
        assert exc_info.value.code == 1
        assert "Unsupported file extension" in capsys.readouterr().err
        mock_pipeline_cls.return_value.close.assert_called_once()

    def test_benchmark_command(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        predictions = tmp_path / "pred.json"
        predictions.write_text(json.dumps({"a.pdf": {"total": "$182.05"}}))
        ground_truth = tmp_path / "gt.json"
        ground_truth.write_text(json.dumps({"a.pdf": {"total": "182.05"}}))
        report = tmp_path / "report.txt"

        main(["benchmark", str(predictions), str(ground_truth), "-o", str(report)])
        assert "Overall Accuracy:       100.00%" in capsys.readouterr().out
        assert report.exists()

    def test_benchmark_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["benchmark", str(tmp_path / "pred.json"), str(tmp_path / "gt.json")])
        assert exc_info.value.code == 1
