import logging
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
from prometheus_client import (
    CollectorRegistry,
    Gauge,
    generate_latest,
    write_to_textfile,
)

from overcast_archive import credentials, overcast
from overcast_archive.db import Database, StoreError
from overcast_archive.utils import (
    EncryptionKey,
    generate_encryption_key,
    is_valid_encryption_key,
)

logger = logging.getLogger("overcast-archive")


@dataclass
class Context:
    username: str | None
    password: str | None
    auth_file: Path
    encryption_key: EncryptionKey | None

    def load_credentials(self) -> credentials.Credentials:
        if self.username and self.password:
            return credentials.Credentials(self.username, self.password)
        elif self.auth_file.exists():
            return credentials.load_credentials(self.auth_file, self.encryption_key)
        raise click.UsageError(
            "No credentials provided. Run the `auth` subcommand first, "
            "or provide credentials with --username and --password."
        )


@click.group()
@click.option("--username", "-u", envvar="OVERCAST_USERNAME", help="Overcast username.")
@click.option("--password", "-p", envvar="OVERCAST_PASSWORD", help="Overcast password.")
@click.option(
    "--auth-file",
    "-a",
    default="auth.json",
    show_default=True,
    type=click.Path(path_type=Path, dir_okay=False),
    help="Storage location for Overcast credentials.",
)
@click.option("--encryption-key", envvar="ENCRYPTION_KEY")
@click.option("--verbose", "-v", is_flag=True)
@click.pass_context
def cli(
    ctx: click.Context,
    username: str | None,
    password: str | None,
    auth_file: Path,
    encryption_key: str | None,
    verbose: bool,
) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=log_level)

    if encryption_key and not is_valid_encryption_key(encryption_key):
        raise click.BadParameter(
            "must be 64 base64 characters, see `generate-key`",
            param_hint="--encryption-key",
        )

    ctx.obj = Context(
        username=username,
        password=password,
        auth_file=auth_file,
        encryption_key=EncryptionKey(encryption_key) if encryption_key else None,
    )


@cli.command("auth")
@click.pass_obj
def auth(ctx: Context) -> None:
    """Authenticate with Overcast."""
    if ctx.username and ctx.password:
        creds = credentials.Credentials(ctx.username, ctx.password)
    else:
        creds = credentials.Credentials(
            username=click.prompt("Overcast username"),
            password=click.prompt("Overcast password", hide_input=True),
        )

    try:
        credentials.save_credentials(ctx.auth_file, creds, ctx.encryption_key)
        overcast.authenticate(overcast.session(), creds.username, creds.password)
    except credentials.CredentialsError as e:
        _fail("credentials", e)
    except overcast.AuthError as e:
        _fail("authentication", e)

    logger.info("Authenticated successfully.")


@cli.command("archive")
@click.argument("db_path", type=click.Path(path_type=Path, dir_okay=False))
@click.pass_obj
def archive(ctx: Context, db_path: Path) -> None:
    """Save Overcast feeds/episodes to sqlite."""
    try:
        creds = ctx.load_credentials()
    except credentials.CredentialsError as e:
        _fail("credentials", e)

    session = overcast.session()

    logger.info("[1/3] Authenticating with Overcast...")
    try:
        overcast.authenticate(session, creds.username, creds.password)
    except overcast.AuthError as e:
        _fail("authentication", e)

    logger.info("[2/3] Fetching podcasts...")
    try:
        document = overcast.fetch_export(session)
    except overcast.FetchError as e:
        _fail("fetch", e)

    try:
        feeds = overcast.parse_export(document)
    except overcast.ParseError as e:
        _fail("parse", e)

    logger.info(
        "Fetched %i feeds with a total of %i episodes.",
        len(feeds),
        sum(len(feed.episodes) for feed in feeds),
    )

    logger.info("[3/3] Writing podcasts to sqlite db...")
    try:
        with Database(path=db_path) as db:
            db.ensure_schema()
            db.upsert(feeds)
    except StoreError as e:
        _fail("store", e)


@cli.command("metrics")
@click.argument("db_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--metrics-filename", type=click.Path(path_type=Path))
def metrics(db_path: Path, metrics_filename: Path | None) -> None:
    """Report archive counts as Prometheus metrics."""
    registry = CollectorRegistry()

    overcast_feed_count = Gauge(
        "overcast_feed_count",
        "Count of archived Overcast feeds",
        labelnames=["subscribed"],
        registry=registry,
    )
    overcast_episode_count = Gauge(
        "overcast_episode_count",
        "Count of archived Overcast episodes",
        labelnames=["played", "user_deleted"],
        registry=registry,
    )

    logger.info("[metrics]")

    for subscribed in ["true", "false"]:
        overcast_feed_count.labels(subscribed=subscribed).set(0)
    for played in ["true", "false"]:
        for user_deleted in ["true", "false"]:
            overcast_episode_count.labels(
                played=played, user_deleted=user_deleted
            ).set(0)

    try:
        with Database(path=db_path) as db:
            db_feeds = db.feeds()
            db_episodes = db.episodes()
    except StoreError as e:
        _fail("store", e)

    for db_feed in db_feeds:
        overcast_feed_count.labels(subscribed=_label(db_feed.subscribed)).inc()

    for db_episode in db_episodes:
        overcast_episode_count.labels(
            played=_label(db_episode.played),
            user_deleted=_label(db_episode.user_deleted),
        ).inc()

    for line in generate_latest(registry=registry).splitlines():
        logger.info(line.decode())

    if metrics_filename:
        logger.debug("Writing metrics to %s", metrics_filename)
        write_to_textfile(str(metrics_filename), registry)


@cli.command("generate-key")
def generate_key() -> None:
    """Print a new ENCRYPTION_KEY for the auth file."""
    click.echo(generate_encryption_key())


def _label(value: bool) -> str:
    return "true" if value else "false"


def _fail(phase: str, e: Exception) -> NoReturn:
    logger.error("%s failed: %s", phase.capitalize(), e)
    raise click.ClickException(f"{phase} failed: {e}") from e


if __name__ == "__main__":
    cli()
