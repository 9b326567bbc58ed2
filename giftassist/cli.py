import asyncio
import logging
from pathlib import Path

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.table import Table

from . import __version__
from .configuration import Settings
from .embedders import Embedder, create_embedder
from .errors import GiftAssistError, IngestValidationError
from .ingestion import IngestionPipeline, load_spreadsheet, make_resource_id
from .models import IngestResult, Product
from .retrieval import DEFAULT_TOP_K, LocalCatalog, RetrievalService
from .vectorstores import VectorStore, create_vector_store

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

LOG_LEVELS = ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"]
UVICORN_LOG_LEVELS = {"WARN": "warning", "FATAL": "critical"}


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.getLevelName("INFO")  # type: ignore


def load_settings(log_level: str | None) -> Settings:
    settings = Settings.from_env()
    if log_level is not None:
        settings = settings.model_copy(update={"log_level": log_level.upper()})
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            get_log_level(settings.log_level)
        )
    )
    return settings


def log_level_option(fn):  # type: ignore
    return click.option(
        "--log-level",
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Overrides GIFTASSIST_LOG_LEVEL.",
    )(fn)


def load_catalog(settings: Settings) -> LocalCatalog:
    if not settings.catalog_path:
        return LocalCatalog()
    return LocalCatalog.from_json(settings.catalog_path)


@click.group()
@click.version_option(version=__version__)
def cli():
    """Ingest product spreadsheets and search the gift catalog."""


@cli.command()
@click.argument(
    "file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--shop-id",
    type=click.STRING,
    default=None,
    help="Store rows as shop-<ID>, replacing the shop's previous upload.",
)
@click.option(
    "--prune-stale/--no-prune-stale",
    default=None,
    help="Delete rows left over from a longer previous upload. "
    "Defaults to GIFTASSIST_PRUNE_STALE.",
)
@log_level_option
def ingest(
    file: Path, shop_id: str | None, prune_stale: bool | None, log_level: str | None
) -> None:
    """Ingest an .xlsx or .xls product sheet into the vector index."""
    settings = load_settings(log_level)
    if prune_stale is not None:
        settings = settings.model_copy(update={"prune_stale": prune_stale})

    async def do() -> tuple[str, IngestResult]:
        sheet = load_spreadsheet(
            file.read_bytes(),
            file_name=file.name,
            max_bytes=settings.max_upload_bytes,
        )
        resource_id = make_resource_id(shop_id)
        store = create_vector_store(settings)
        try:
            pipeline = IngestionPipeline.from_settings(
                settings, create_embedder(settings), store
            )
            return resource_id, await pipeline.ingest_spreadsheet(sheet, resource_id)
        finally:
            await store.close()

    try:
        resource_id, result = asyncio.run(do())
    except IngestValidationError as e:
        raise click.ClickException(str(e)) from e
    except (GiftAssistError, asyncio.TimeoutError) as e:
        log.error("ingestion failed", error=str(e), error_type=e.__class__.__name__)
        raise click.ClickException("ingestion failed, see the log above") from e

    click.echo(
        f"Upserted {result.rows_upserted} rows as {resource_id} "
        f"({result.images_valid} valid images, {result.images_invalid} invalid)"
    )


def products_table(products: list[Product]) -> Table:
    table = Table("id", "score", "content")
    for product in products:
        score = f"{product.score:.3f}" if product.score is not None else ""
        table.add_row(product.id, score, product.content)
    return table


@cli.command()
@click.argument("query", type=click.STRING)
@click.option(
    "-k",
    "--top-k",
    type=click.IntRange(1, 50),
    default=DEFAULT_TOP_K,
    show_default=True,
)
@log_level_option
def search(query: str, top_k: int, log_level: str | None) -> None:
    """Search the index, falling back to the local catalog by keyword."""
    settings = load_settings(log_level)

    async def do() -> list[Product]:
        store = create_vector_store(settings)
        try:
            retrieval = RetrievalService(
                create_embedder(settings),
                store,
                load_catalog(settings),
                backend_timeout=settings.backend_timeout,
            )
            return await retrieval.search(query, top_k)
        finally:
            await store.close()

    try:
        products = asyncio.run(do())
    except GiftAssistError as e:
        raise click.ClickException(f"search failed: {e}") from e
    if not products:
        click.echo("No products found.")
        return
    Console(width=120).print(products_table(products))


@cli.command()
@click.confirmation_option(prompt="Delete every record in the vector index?")
@log_level_option
def reset(log_level: str | None) -> None:
    """Remove every record from the vector index."""
    settings = load_settings(log_level)

    async def do() -> None:
        store = create_vector_store(settings)
        try:
            await store.reset()
        finally:
            await store.close()

    try:
        asyncio.run(do())
    except GiftAssistError as e:
        raise click.ClickException(f"reset failed: {e}") from e
    click.echo(f"The {settings.vector_backend} index has been cleared.")


def _presence(value: str | None) -> str:
    return "set" if value else "missing"


async def _check_embedder(embedder: Embedder) -> str:
    vector = await embedder.embed_one("Test diagnostic message")
    return f"{embedder.model} ok, {len(vector)} dimensions"


async def _check_store(store: VectorStore) -> str:
    try:
        info = await store.describe()
    finally:
        await store.close()
    return ", ".join(f"{key}={value}" for key, value in info.items())


@cli.command()
@log_level_option
def diagnose(log_level: str | None) -> None:
    """Check configuration and connectivity of the embedding and vector backends."""
    settings = load_settings(log_level)
    console = Console(width=120)
    failed = False

    env = Table("setting", "status")
    env.add_row("vector backend", settings.vector_backend)
    env.add_row("OPENAI_API_KEY", _presence(settings.openai_api_key))
    if settings.vector_backend == "upstash":
        env.add_row("UPSTASH_VECTOR_REST_URL", _presence(settings.upstash_url))
        env.add_row("UPSTASH_VECTOR_REST_TOKEN", _presence(settings.upstash_token))
    if settings.vector_backend == "pinecone":
        env.add_row("PINECONE_API_KEY", _presence(settings.pinecone_api_key))
        env.add_row("PINECONE_INDEX", settings.pinecone_index or "missing")
    env.add_row("catalog", settings.catalog_path or "none")
    console.print(env)

    checks = Table("check", "result")
    try:
        checks.add_row(
            "embedding", asyncio.run(_check_embedder(create_embedder(settings)))
        )
    except Exception as e:
        failed = True
        checks.add_row("embedding", f"failed: {e}")
    try:
        checks.add_row(
            "vector store", asyncio.run(_check_store(create_vector_store(settings)))
        )
    except Exception as e:
        failed = True
        checks.add_row("vector store", f"failed: {e}")
    try:
        checks.add_row("catalog", f"{len(load_catalog(settings))} products")
    except GiftAssistError as e:
        failed = True
        checks.add_row("catalog", f"failed: {e}")
    console.print(checks)

    if failed:
        raise SystemExit(1)


@cli.command()
@click.option("--host", type=click.STRING, default="127.0.0.1", show_default=True)
@click.option("--port", type=click.IntRange(1, 65535), default=8000, show_default=True)
@log_level_option
def serve(host: str, port: int, log_level: str | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    settings = load_settings(log_level)
    uvicorn.run(
        "giftassist.api:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=UVICORN_LOG_LEVELS.get(
            settings.log_level, settings.log_level.lower()
        ),
    )
