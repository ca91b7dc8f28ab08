"""ListVerify CLI: CSV email list validation from the command line.

Commands:
  preview   Show address stats for one column of a CSV file
  prepare   Split a CSV file into stored address and full extracts
  validate  Verify every address in a CSV file and write the augmented file
  status    Show status, stats and progress for a validation job
  add-user  Create a user (or top up credits) in the local DuckDB store
"""

import asyncio
import dataclasses
import json
import logging
import sys
import uuid
from pathlib import Path

import click
from tqdm import tqdm

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from engine.config import Settings
from engine.errors import ListVerifyError, UserError, readable_error_message
from engine.models import ValidationRequest
from engine.pipeline import build_pipeline
from engine.splitter import parse_table, preview_table, resolve_column
from engine.verifier import VerificationClient


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _column_index(content: bytes, column: str) -> int:
    try:
        return resolve_column(parse_table(content), column)
    except UserError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--blob-dir", type=click.Path(), help="Local blob directory (overrides env)")
@click.option("--db", "db_path", type=click.Path(), help="DuckDB file (overrides env)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, blob_dir: str, db_path: str):
    """ListVerify: validate the email column of a CSV list."""
    _setup_logging(verbose)
    settings = Settings.from_env()
    overrides = {}
    if blob_dir:
        overrides.update(storage_backend="local", local_blob_dir=Path(blob_dir))
    if db_path:
        overrides.update(db_backend="duckdb", duckdb_path=Path(db_path))
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    ctx.obj = {"settings": settings}


@main.command()
@click.argument("filepath", type=click.Path(exists=True))
@click.option("--column", "-c", "column", required=True, help="Email column index or header name")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def preview(filepath: str, column: str, json_output: bool):
    """Show address stats for one column of a CSV file."""
    content = Path(filepath).read_bytes()
    try:
        stats = preview_table(content, _column_index(content, column))
    except UserError as e:
        raise click.ClickException(str(e))

    if json_output:
        click.echo(json.dumps(stats.model_dump(), indent=2))
        return
    click.echo(f"Column:     {stats.column_name}")
    click.echo(f"Rows:       {stats.total_rows}")
    click.echo(f"Emails:     {stats.total_emails}")
    click.echo(f"Empty:      {stats.total_empty_emails}")
    click.echo(f"Duplicates: {stats.total_duplicate_emails}")


@main.command()
@click.argument("filepath", type=click.Path(exists=True))
@click.option("--column", "-c", "column", required=True, help="Email column index or header name")
@click.option("--remove-empty", is_flag=True, help="Drop rows with an empty address")
@click.pass_context
def prepare(ctx: click.Context, filepath: str, column: str, remove_empty: bool):
    """Split a CSV file into stored address and full extracts."""
    content = Path(filepath).read_bytes()
    column_index = _column_index(content, column)
    pipeline = build_pipeline(_settings(ctx))
    try:
        prepared = pipeline.prepare_upload(
            content,
            Path(filepath).name,
            column_index,
            remove_empty,
        )
    except ListVerifyError as e:
        raise click.ClickException(readable_error_message(e))

    click.echo(json.dumps(prepared.model_dump(exclude_none=True), indent=2))


@main.command()
@click.argument("filepath", type=click.Path(exists=True))
@click.option("--column", "-c", "column", required=True, help="Email column index or header name")
@click.option("--user", "user_email", required=True, help="Account charged for the run")
@click.option("--output", "-o", type=click.Path(), help="Where to write the augmented CSV")
@click.option("--split/--no-split", default=True, help="Verify from split extracts (default) or the file as-is")
@click.option("--remove-empty", is_flag=True, help="Drop rows with an empty address (split mode only)")
@click.option("--workers", "-w", type=int, help="Concurrent verification workers")
@click.pass_context
def validate(
    ctx: click.Context,
    filepath: str,
    column: str,
    user_email: str,
    output: str,
    split: bool,
    remove_empty: bool,
    workers: int,
):
    """Verify every address in a CSV file and write the augmented file.

    The file is stored in the blob store first, the run is charged to USER
    and the result lands next to the input as <name>_validated.csv unless
    --output is given.
    """
    settings = _settings(ctx)
    if workers:
        settings = dataclasses.replace(settings, worker_count=workers)

    source = Path(filepath)
    content = source.read_bytes()
    column_index = _column_index(content, column)
    filename = f"{source.stem}_validated.csv"
    output_path = Path(output) if output else source.with_name(filename)

    try:
        result, file_id, data = asyncio.run(
            _run_validation(settings, content, source.name, filename, column_index, user_email, split, remove_empty)
        )
    except ListVerifyError as e:
        raise click.ClickException(readable_error_message(e))

    output_path.write_bytes(data)
    stats = result.stats
    click.echo(f"\nJob {file_id}: {result.status}")
    click.echo(f"  Valid:        {stats.valid}")
    click.echo(f"  Invalid:      {stats.invalid}")
    click.echo(f"  Unverifiable: {stats.unverifiable}")
    click.echo(f"  Output:       {output_path}")


async def _run_validation(
    settings: Settings,
    content: bytes,
    source_name: str,
    filename: str,
    column_index: int,
    user_email: str,
    split: bool,
    remove_empty: bool,
):
    async with VerificationClient.from_settings(settings) as verifier:
        pipeline = build_pipeline(settings, verifier=verifier)

        if split:
            prepared = await asyncio.to_thread(
                pipeline.prepare_upload, content, source_name, column_index, remove_empty
            )
            if prepared.warning:
                click.echo(f"Warning: {prepared.warning}", err=True)
            total = prepared.total_emails
            full_filename, emails_filename = prepared.full_filename, prepared.emails_filename
        else:
            total = len(parse_table(content).rows)
            await asyncio.to_thread(pipeline.put_file, filename, content)
            full_filename = emails_filename = None

        request = ValidationRequest(
            filename=filename,
            email_column_index=column_index,
            user_email=user_email,
            total_emails=total,
            file_id=str(uuid.uuid4()),
            full_filename=full_filename,
            emails_filename=emails_filename,
        )
        click.echo(f"Verifying {total} emails (workers={settings.worker_count})...")
        pbar = tqdm(total=total, desc="Verifying", unit="email")
        try:
            result = await pipeline.run(request, on_outcome=lambda outcome: pbar.update(1))
        finally:
            pbar.close()

        data = await asyncio.to_thread(pipeline.blob_store.get, settings.blob_path(filename))
    return result, request.file_id, data


@main.command()
@click.argument("file_id")
@click.pass_context
def status(ctx: click.Context, file_id: str):
    """Show status, stats and progress for a validation job."""
    pipeline = build_pipeline(_settings(ctx))
    job_status = pipeline.recorder.get_status(file_id)
    if job_status is None:
        raise click.ClickException(f"No job {file_id}")
    click.echo(json.dumps(job_status, indent=2))


@main.command("add-user")
@click.argument("user_email")
@click.option("--credits", type=int, default=0, help="Credits to grant")
@click.pass_context
def add_user(ctx: click.Context, user_email: str, credits: int):
    """Create a user (or top up credits) in the local DuckDB store."""
    from store.duckdb_io import DuckDBStore

    settings = _settings(ctx)
    if settings.db_backend != "duckdb":
        raise click.ClickException("add-user only manages the local DuckDB store")

    store = DuckDBStore(settings.duckdb_path)
    try:
        if store.get_user_by_email(user_email) is None:
            user = store.create_user(user_email, credits)
        else:
            user = store.add_credits(user_email, credits)
    finally:
        store.close()
    click.echo(f"{user.user_email}: {user.credits} credits ({user.available_credits} available)")


if __name__ == "__main__":
    main()
