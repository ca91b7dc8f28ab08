import json
import re

from click.testing import CliRunner

import cli
from engine.splitter import parse_table
from engine.verifier import VerificationClient

CONTACTS = "name,email,age\nA,a@x.com,20\nB,bad,x\nC,,5\n"


def _base_args(tmp_path):
    return ["--blob-dir", str(tmp_path / "blobs"), "--db", str(tmp_path / "listverify.duckdb")]


def test_preview_prints_stats_as_json(tmp_path) -> None:
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)

    result = CliRunner().invoke(cli.main, _base_args(tmp_path) + ["preview", str(source), "-c", "1", "--json-output"])

    assert result.exit_code == 0, result.output
    stats = json.loads(result.output[result.output.index("{"):])
    assert stats["total_emails"] == 2
    assert stats["total_empty_emails"] == 1


def test_preview_reports_bad_column(tmp_path) -> None:
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)

    result = CliRunner().invoke(cli.main, _base_args(tmp_path) + ["preview", str(source), "-c", "2"])

    assert result.exit_code != 0
    assert "Suggested columns: 1" in result.output


def test_preview_accepts_column_by_header_name(tmp_path) -> None:
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)

    by_name = CliRunner().invoke(cli.main, _base_args(tmp_path) + ["preview", str(source), "-c", "email"])
    unknown = CliRunner().invoke(cli.main, _base_args(tmp_path) + ["preview", str(source), "-c", "phone"])

    assert by_name.exit_code == 0, by_name.output
    assert "Column:     email" in by_name.output
    assert unknown.exit_code != 0
    assert "No column named 'phone'" in unknown.output


def test_prepare_writes_extracts(tmp_path) -> None:
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)

    result = CliRunner().invoke(cli.main, _base_args(tmp_path) + ["prepare", str(source), "-c", "1"])

    assert result.exit_code == 0, result.output
    prepared = json.loads(result.output[result.output.index("{"):])
    assert prepared["total_emails"] == 3
    assert (tmp_path / "blobs" / "uploads" / prepared["emails_filename"]).exists()
    assert (tmp_path / "blobs" / "uploads" / prepared["full_filename"]).exists()


def test_add_user_then_validate_writes_augmented_file(tmp_path, monkeypatch, verify_service) -> None:
    verify_service.responses["bad"] = {"email_status": "invalid"}

    class _StubClient:
        @staticmethod
        def from_settings(settings):
            async def no_sleep(seconds):
                return None

            return VerificationClient(settings.verify_api_url, session=verify_service, sleep_fn=no_sleep)

    monkeypatch.setattr(cli, "VerificationClient", _StubClient)
    runner = CliRunner()
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)
    output = tmp_path / "out.csv"

    added = runner.invoke(cli.main, _base_args(tmp_path) + ["add-user", "ops@example.com", "--credits", "10"])
    assert added.exit_code == 0, added.output
    assert "10 credits" in added.output

    result = runner.invoke(
        cli.main,
        _base_args(tmp_path) + ["validate", str(source), "-c", "1", "--user", "ops@example.com", "-o", str(output)],
    )

    assert result.exit_code == 0, result.output
    assert re.search(r"Job \S+: Completed", result.output)
    table = parse_table(output.read_bytes())
    assert table.header == ["name", "Email", "Email_Validation", "age"]
    assert [row[2] for row in table.rows] == ["valid", "invalid", "invalid"]


def test_validate_unknown_user_fails_cleanly(tmp_path, monkeypatch, verify_service) -> None:
    class _StubClient:
        @staticmethod
        def from_settings(settings):
            return VerificationClient(settings.verify_api_url, session=verify_service)

    monkeypatch.setattr(cli, "VerificationClient", _StubClient)
    source = tmp_path / "contacts.csv"
    source.write_text(CONTACTS)

    result = CliRunner().invoke(
        cli.main,
        _base_args(tmp_path) + ["validate", str(source), "-c", "1", "--user", "nobody@example.com", "--no-split"],
    )

    assert result.exit_code != 0
    assert "User not found" in result.output
    assert verify_service.calls == []
