from __future__ import annotations

import asyncio
import json
import logging

import click

from .cache import CacheStore
from .cli_options import PagesOptions
from .config import CacheConfig, graphql_endpoint
from .errors import FetchError
from .fetcher import FetchCoordinator
from .graphql_api import GraphQLClient
from .prefetch import PrefetchGateway
from .resources import ADAPTERS, get_adapter


@click.command()
@click.argument(
    "resource",
    type=click.Choice(sorted(ADAPTERS), case_sensitive=False),
)
@click.option(
    "--page-size",
    type=int,
    default=20,
    help="Number of items requested per page.",
)
@click.option(
    "--pages",
    type=int,
    default=1,
    help="Maximum number of pages to walk forward.",
)
@click.option(
    "--api-host",
    type=str,
    default=None,
    help="API host; defaults to $CURSOR_QUERY_API_HOST.",
    show_default=False,
)
@click.option(
    "--token",
    type=str,
    default=None,
    help="Bearer token; defaults to $CURSOR_QUERY_TOKEN.",
    show_default=False,
)
@click.option(
    "--app-id",
    type=str,
    default=None,
    help="Value of the X-App-Id header; defaults to $CURSOR_QUERY_APP_ID.",
    show_default=False,
)
@click.option(
    "--prefetch/--no-prefetch",
    default=False,
    help="Prefetch the next page while the current one is printed.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging level.",
)
def click_main(
    resource: str,
    page_size: int,
    pages: int,
    api_host: str | None,
    token: str | None,
    app_id: str | None,
    prefetch: bool,
    log_level: str,
):
    options = PagesOptions(
        resource=resource.lower(),
        page_size=page_size,
        pages=pages,
        api_host=api_host,
        token=token,
        app_id=app_id,
        prefetch=prefetch,
        log_level=log_level,
    )
    _run_pages(options)


def main():
    click_main()


def _run_pages(options: PagesOptions) -> None:
    _validate_pages_options(options)
    logging.basicConfig(level=getattr(logging, options.log_level.upper()))

    try:
        asyncio.run(_walk_pages(options))
    except FetchError as exc:
        raise click.ClickException(f"{exc.user_message} ({exc})") from exc


async def _walk_pages(options: PagesOptions) -> None:
    adapter = get_adapter(options.resource)
    client = GraphQLClient(
        graphql_endpoint(options.api_host),
        app_id=options.app_id,
        token=options.token,
    )
    coordinator = FetchCoordinator(CacheStore(CacheConfig.from_env()))
    gateway = PrefetchGateway(coordinator)
    controller = adapter.paginate(coordinator, client)

    try:
        page = await controller.load_first_page({"first": options.page_size})
        for number in range(1, options.pages + 1):
            if options.prefetch and number < options.pages:
                gateway.prefetch_next_page(controller)
            click.echo(f"# page {number}")
            for node in page.nodes:
                click.echo(json.dumps(node, sort_keys=True, default=str))
            if number == options.pages:
                break
            if not controller.has_next_page():
                click.echo("No more pages.")
                break
            page = await controller.go_to_next_page()
    finally:
        controller.close()
        await gateway.close()
        await coordinator.close()


def _validate_pages_options(options: PagesOptions) -> None:
    if options.pages < 1:
        raise click.BadParameter(
            "--pages must be a positive integer.",
            param_hint="--pages",
        )
    if options.page_size < 1:
        raise click.BadParameter(
            "--page-size must be a positive integer.",
            param_hint="--page-size",
        )


if __name__ == "__main__":
    main()
