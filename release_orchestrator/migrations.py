"""Run the Alembic schema migrations programmatically or from the command line."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config

from .config import Settings, get_settings

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def alembic_config(database_path: Path) -> Config:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", f"sqlite:///{database_path}")
    return cfg


def upgrade_database(database_path: Path, revision: str = "head") -> None:
    command.upgrade(alembic_config(database_path), revision)


def downgrade_database(database_path: Path, revision: str) -> None:
    command.downgrade(alembic_config(database_path), revision)


_COMMANDS = {
    "upgrade": lambda cfg, revision: command.upgrade(cfg, revision),
    "downgrade": lambda cfg, revision: command.downgrade(cfg, revision),
    "stamp": lambda cfg, revision: command.stamp(cfg, revision),
    "current": lambda cfg, revision: command.current(cfg, verbose=True),
}


def _database_path(explicit: Optional[str], env_file: Optional[str]) -> Path:
    if explicit:
        return Path(explicit).expanduser().resolve()
    settings: Settings = Settings.from_env(env_file) if env_file else get_settings()
    return settings.database_path


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Manage release orchestrator schema migrations")
    parser.add_argument("command", choices=sorted(_COMMANDS), help="Alembic command to execute")
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    parser.add_argument("--database", default=None, help="Database path (default: from settings)")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load settings from")
    args = parser.parse_args(argv)

    database_path = _database_path(args.database, args.env_file)
    database_path.parent.mkdir(parents=True, exist_ok=True)
    _COMMANDS[args.command](alembic_config(database_path), args.revision)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
