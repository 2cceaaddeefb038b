"""Command line interface for repocache."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Sequence

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .api import RepoCache, RepoCacheConfigError, set_data_dir
from .config import (
    DEFAULT_PROVIDER,
    load_config,
    resolve_default_model,
    set_api_key,
    set_base_url,
    set_batch_size,
    set_model,
    set_provider,
)
from .errors import RepoCacheError
from .search import SimilarHit
from .services.reconcile_service import ReconcileMode
from .text import Messages, Styles
from .utils import ensure_positive

console = Console()

app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
cache_app = typer.Typer(help=Messages.HELP_CACHE, no_args_is_help=True)
app.add_typer(cache_app, name="cache")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"repocache v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", help=Messages.HELP_VERBOSE),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=Messages.HELP_DATA_DIR),
) -> None:
    """Global Typer callback for shared options."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s %(levelname)s %(message)s",
    )
    if data_dir is not None:
        set_data_dir(data_dir)


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


@contextmanager
def _handle_errors():
    try:
        yield
    except (RepoCacheError, RepoCacheConfigError, OSError, ValueError) as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)


def _open_cache() -> RepoCache:
    return RepoCache()


def _parse_where(values: Sequence[str] | None) -> dict[str, object] | None:
    if not values:
        return None
    where: dict[str, object] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise typer.BadParameter(Messages.ERROR_WHERE_INVALID.format(value=raw))
        lowered = value.strip().lower()
        if lowered in {"true", "false"}:
            where[key] = lowered == "true"
        else:
            where[key] = value.strip()
    return where


@app.command()
def index(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_INDEX_PATH),
    force: bool = typer.Option(False, "--force", "-f", help=Messages.HELP_INDEX_FORCE),
) -> None:
    """Reconcile the repository's vector collection with git HEAD."""
    with _handle_errors():
        repo = _open_cache()
        console.print(_styled(Messages.INFO_RECONCILE_RUNNING.format(path=path), Styles.INFO))
        result = repo.reconcile(path, force_full=force)
    short = result.commit[:12]
    if result.mode is ReconcileMode.NOOP:
        message = Messages.INFO_RECONCILE_NOOP.format(commit=short)
    elif result.mode is ReconcileMode.FULL:
        message = Messages.INFO_RECONCILE_FULL.format(count=result.indexed, commit=short)
    else:
        message = Messages.INFO_RECONCILE_INCREMENTAL.format(
            count=result.indexed, removed=result.removed, commit=short
        )
    console.print(_styled(message, Styles.SUCCESS))


@app.command()
def search(
    query: str = typer.Argument(..., help=Messages.HELP_SEARCH_QUERY),
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_SEARCH_PATH),
    top: int = typer.Option(5, "--top", "-k", help=Messages.HELP_SEARCH_TOP),
    tests: bool = typer.Option(False, "--tests", help=Messages.HELP_SEARCH_TESTS),
    where: list[str] | None = typer.Option(None, "--where", help=Messages.HELP_SEARCH_WHERE),
) -> None:
    """Find source files similar to a query."""
    try:
        ensure_positive(top, "top")
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    filters = _parse_where(where)
    with _handle_errors():
        repo = _open_cache()
        if tests:
            hits = repo.find_similar_tests(query, path, top)
        else:
            hits = repo.find_similar_filtered(query, path, top, filters)
    if not hits:
        console.print(_styled(Messages.INFO_NO_RESULTS, Styles.WARNING))
        raise typer.Exit(code=0)
    _render_hits(Messages.TABLE_TITLE, hits)


@app.command()
def status(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_STATUS_PATH),
) -> None:
    """Show what is indexed for a repository."""
    with _handle_errors():
        stats = _open_cache().index_stats(path)
    if stats is None:
        console.print(_styled(Messages.INFO_STATUS_MISSING.format(path=path), Styles.WARNING))
        raise typer.Exit(code=1)
    console.print(
        _styled(
            Messages.INFO_STATUS_SUMMARY.format(
                files=stats.total_files,
                commit=stats.last_indexed_commit or "none",
                indexed_at=stats.last_indexed_at or "never",
            ),
            Styles.INFO,
        )
    )


@app.command()
def patterns(
    directory: str = typer.Argument("", help=Messages.HELP_PATTERNS_DIR),
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_INDEX_PATH),
    refresh: bool = typer.Option(False, "--refresh", help=Messages.HELP_PATTERNS_REFRESH),
) -> None:
    """Summarize the structural conventions of one directory."""
    with _handle_errors():
        summary = _open_cache().directory_patterns(path, directory, refresh=refresh)
    console.print(
        _styled(Messages.TABLE_PATTERNS_TITLE.format(path=summary.directory), Styles.TITLE)
    )
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_PATTERNS_KEY, no_wrap=True)
    table.add_column(Messages.TABLE_PATTERNS_VALUE, overflow="fold")
    table.add_row("files", str(summary.file_count))
    table.add_row(
        "file types",
        ", ".join(f"{name}={count}" for name, count in summary.file_types.items()) or "-",
    )
    table.add_row("page objects", ", ".join(summary.page_objects) or "-")
    table.add_row("tests", ", ".join(summary.tests) or "-")
    table.add_row("top imports", ", ".join(summary.top_imports) or "-")
    table.add_row("top annotations", ", ".join(summary.top_annotations) or "-")
    table.add_row("method verbs", ", ".join(summary.method_verbs) or "-")
    console.print(table)


@app.command("page-objects")
def page_objects(
    term: str | None = typer.Argument(None, help=Messages.HELP_PAGE_OBJECTS_TERM),
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_SEARCH_PATH),
) -> None:
    """List page objects, optionally ranked by a search term."""
    with _handle_errors():
        hits = _open_cache().find_page_objects(path, term)
    if not hits:
        console.print(_styled(Messages.INFO_NO_PAGE_OBJECTS, Styles.WARNING))
        raise typer.Exit(code=0)
    _render_hits(Messages.TABLE_PAGE_OBJECTS_TITLE, hits)


@cache_app.command("stats", help=Messages.HELP_CACHE_STATS)
def cache_stats() -> None:
    with _handle_errors():
        rows = _open_cache().stats().as_rows()
    console.print(_styled(Messages.TABLE_STATS_TITLE, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_STATS_KEY)
    table.add_column(Messages.TABLE_STATS_VALUE, justify="right")
    for label, value in rows:
        table.add_row(label, value)
    console.print(table)


@cache_app.command("sweep", help=Messages.HELP_CACHE_SWEEP)
def cache_sweep() -> None:
    with _handle_errors():
        report = _open_cache().sweep()
    console.print(
        _styled(
            Messages.INFO_CACHE_SWEPT.format(
                records=report.expired_records,
                artifacts=report.expired_artifacts,
                patterns=report.expired_patterns,
                blobs=report.orphaned_blobs,
            ),
            Styles.SUCCESS,
        )
    )


@cache_app.command("clear", help=Messages.HELP_CACHE_CLEAR)
def cache_clear() -> None:
    with _handle_errors():
        cleared = _open_cache().clear()
    if not cleared:
        console.print(_styled(Messages.INFO_CACHE_CLEAR_FAILED, Styles.ERROR))
        raise typer.Exit(code=1)
    console.print(_styled(Messages.INFO_CACHE_CLEARED, Styles.SUCCESS))


@cache_app.command("invalidate", help=Messages.HELP_CACHE_INVALIDATE)
def cache_invalidate(
    paths: list[Path] = typer.Argument(..., help=Messages.HELP_INVALIDATE_PATHS),
) -> None:
    with _handle_errors():
        removed = _open_cache().invalidate(paths)
    console.print(
        _styled(
            Messages.INFO_CACHE_INVALIDATED.format(
                count=removed, plural="" if removed == 1 else "s"
            ),
            Styles.SUCCESS,
        )
    )


@app.command()
def config(
    set_api_key_option: str | None = typer.Option(
        None,
        "--set-api-key",
        help=Messages.HELP_SET_API_KEY,
    ),
    clear_api_key: bool = typer.Option(
        False,
        "--clear-api-key",
        help=Messages.HELP_CLEAR_API_KEY,
    ),
    set_provider_option: str | None = typer.Option(
        None,
        "--set-provider",
        help=Messages.HELP_SET_PROVIDER,
    ),
    set_model_option: str | None = typer.Option(
        None,
        "--set-model",
        help=Messages.HELP_SET_MODEL,
    ),
    set_base_url_option: str | None = typer.Option(
        None,
        "--set-base-url",
        help=Messages.HELP_SET_BASE_URL,
    ),
    clear_base_url: bool = typer.Option(
        False,
        "--clear-base-url",
        help=Messages.HELP_CLEAR_BASE_URL,
    ),
    set_batch_option: int | None = typer.Option(
        None,
        "--set-batch-size",
        help=Messages.HELP_SET_BATCH,
    ),
    show: bool = typer.Option(
        False,
        "--show",
        help=Messages.HELP_SHOW_CONFIG,
    ),
) -> None:
    """Manage repocache configuration."""
    changed = False
    with _handle_errors():
        if set_api_key_option is not None:
            set_api_key(set_api_key_option)
            console.print(_styled(Messages.INFO_API_SAVED, Styles.SUCCESS))
            changed = True
        if clear_api_key:
            set_api_key(None)
            console.print(_styled(Messages.INFO_API_CLEARED, Styles.SUCCESS))
            changed = True
        if set_provider_option is not None:
            set_provider(set_provider_option)
            console.print(
                _styled(
                    Messages.INFO_PROVIDER_SET.format(value=set_provider_option.lower()),
                    Styles.SUCCESS,
                )
            )
            changed = True
        if set_model_option is not None:
            set_model(set_model_option)
            console.print(
                _styled(Messages.INFO_MODEL_SET.format(value=set_model_option), Styles.SUCCESS)
            )
            changed = True
        if set_base_url_option is not None:
            set_base_url(set_base_url_option)
            console.print(
                _styled(
                    Messages.INFO_BASE_URL_SET.format(value=set_base_url_option),
                    Styles.SUCCESS,
                )
            )
            changed = True
        if clear_base_url:
            set_base_url(None)
            console.print(_styled(Messages.INFO_BASE_URL_CLEARED, Styles.SUCCESS))
            changed = True
        if set_batch_option is not None:
            set_batch_size(ensure_positive(set_batch_option, "batch_size"))
            console.print(
                _styled(Messages.INFO_BATCH_SET.format(value=set_batch_option), Styles.SUCCESS)
            )
            changed = True

    if show or not changed:
        with _handle_errors():
            cfg = load_config()
        provider = (cfg.provider or DEFAULT_PROVIDER).lower()
        console.print(
            _styled(
                Messages.INFO_CONFIG_SUMMARY.format(
                    api="yes" if cfg.api_key else "no",
                    provider=provider,
                    model=resolve_default_model(provider, cfg.model),
                    base_url=cfg.base_url or "none",
                    batch=cfg.batch_size,
                    concurrency=cfg.embed_concurrency,
                    extract_concurrency=cfg.extract_concurrency,
                    data_dir=cfg.data_dir or "default",
                ),
                Styles.INFO,
            )
        )


def _render_hits(title: str, hits: Sequence[SimilarHit]) -> None:
    console.print(_styled(title, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_INDEX, justify="right")
    table.add_column(Messages.TABLE_HEADER_SIMILARITY, justify="right")
    table.add_column(Messages.TABLE_HEADER_PATH, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_CLASS, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_TYPE, no_wrap=True)
    table.add_column(Messages.TABLE_HEADER_METHODS, overflow="fold")
    for idx, hit in enumerate(hits, start=1):
        methods = hit.metadata.get("methods") or []
        table.add_row(
            str(idx),
            f"{hit.similarity:.3f}" if hit.similarity is not None else "-",
            hit.file_path,
            str(hit.metadata.get("class_name") or "-"),
            str(hit.metadata.get("file_type") or "-"),
            _format_methods(methods),
        )
    console.print(table)


def _format_methods(methods: Sequence[str], limit: int = 5) -> str:
    if not methods:
        return "-"
    shown = ", ".join(methods[:limit])
    if len(methods) > limit:
        shown = f"{shown}, +{len(methods) - limit}"
    return shown


def run(argv: list[str] | None = None) -> None:
    """Entry point wrapper allowing optional argument override."""
    if argv is None:
        app()
    else:
        app(args=list(argv))


if __name__ == "__main__":  # pragma: no cover
    run(sys.argv[1:])
