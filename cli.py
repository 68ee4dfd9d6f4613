# CLI for CopyTrader Cloud
import asyncio
import click


@click.group()
def cli():
    """CopyTrader Cloud CLI"""
    pass


@cli.command()
def api():
    """Run the coordinator API server"""
    click.echo("Starting CopyTrader coordinator...")
    from api.main import run as run_api
    run_api()


@cli.command()
def agent():
    """Run the per-host agent poll loop"""
    click.echo("Starting CopyTrader agent...")
    from app.main import main as run_agent
    asyncio.run(run_agent())


@cli.command("init-db")
def init_db():
    """Create the coordinator database schema"""
    from core.config.settings import Settings
    from core.database.connection import DatabaseManager
    from core.logging import configure_logging

    settings = Settings()
    configure_logging(settings)

    async def _init():
        db_manager = DatabaseManager(
            db_url=settings.database.url,
            environment=settings.environment,
            schema_management=settings.database.schema_management,
        )
        try:
            await db_manager.init(schema_management="create_all")
        finally:
            await db_manager.shutdown()

    asyncio.run(_init())
    click.echo("Database schema created")


if __name__ == "__main__":
    cli()
