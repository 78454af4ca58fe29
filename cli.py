# Simple CLI for AutoTrader Hub
import asyncio
import click

from app.containers import AppContainer
from core.security.vault import CredentialVault


@click.group()
def cli():
    """AutoTrader Hub CLI"""
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def api(host, port):
    """Run the API server"""
    click.echo("Starting AutoTrader Hub API server...")
    from api.main import run as run_api
    run_api(host=host, port=port)


@cli.command("init-db")
@click.option("--timeout", default=30, show_default=True, type=float,
              help="Seconds to wait for the database")
def init_db(timeout):
    """Create database tables"""
    container = AppContainer()

    async def _init():
        db_manager = container.db_manager()
        await db_manager.wait_for_ready(timeout=timeout)
        await db_manager.init()
        await db_manager.shutdown()

    asyncio.run(_init())
    click.echo("Database initialized")


@cli.command("generate-key")
def generate_key():
    """Print a new vault encryption key (VAULT__ENCRYPTION_KEY)"""
    click.echo(CredentialVault.generate_key())


@cli.command("issue-token")
@click.argument("user_id")
def issue_token(user_id):
    """Issue a development bearer token for USER_ID"""
    from services.auth import create_access_token
    settings = AppContainer().settings()
    click.echo(create_access_token({"sub": user_id}, settings))


@cli.command()
@click.argument("plaintext")
def encrypt(plaintext):
    """Encrypt a value with the configured vault key"""
    vault = AppContainer().vault()
    click.echo(vault.encrypt(plaintext))


if __name__ == "__main__":
    cli()
