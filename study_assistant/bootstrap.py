"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import json
import logging
import shutil
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, MissingSecretError, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("uploads", self._config.uploads_root),
            ("database", self._config.database_file.parent),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"The {label} directory '{path}' is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured directory exists: %s", path)

        temp_root = self._config.temp_root
        temp_root.mkdir(parents=True, exist_ok=True)
        for child in temp_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove temporary upload %s: %s", child, error)
        LOGGER.debug("Cleared temporary upload directory: %s", temp_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        connection = sqlite3.connect(self._config.database_file)
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                PRAGMA foreign_keys = ON;
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS instances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    folder_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('chat', 'quiz', 'flashcard')),
                    content TEXT NOT NULL DEFAULT '{}',
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    folder_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    file_uri TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    uploaded_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS quizzes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    folder_id INTEGER NOT NULL,
                    instance_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    questions TEXT NOT NULL DEFAULT '[]',
                    file_id INTEGER,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS summaries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    file_id INTEGER NOT NULL UNIQUE,
                    folder_id INTEGER NOT NULL,
                    file_name TEXT NOT NULL,
                    chapters TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_instances_folder ON instances(folder_id);
                CREATE INDEX IF NOT EXISTS idx_files_folder ON files(folder_id);
                CREATE INDEX IF NOT EXISTS idx_quizzes_instance ON quizzes(instance_id);
                CREATE INDEX IF NOT EXISTS idx_summaries_folder ON summaries(folder_id);
                """
            )
            connection.commit()

            def _column_exists(table: str, column: str) -> bool:
                cursor.execute(f"PRAGMA table_info({table})")
                return any(row[1] == column for row in cursor.fetchall())

            # Quizzes originally referenced a single file.
            if not _column_exists("quizzes", "file_ids"):
                cursor.execute(
                    "ALTER TABLE quizzes ADD COLUMN file_ids TEXT NOT NULL DEFAULT '[]'"
                )
                connection.commit()
                cursor.execute("SELECT id, file_id FROM quizzes WHERE file_id IS NOT NULL")
                for quiz_id, file_id in cursor.fetchall():
                    cursor.execute(
                        "UPDATE quizzes SET file_ids = ? WHERE id = ?",
                        (json.dumps([file_id]), quiz_id),
                    )
                connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    try:
        config.session_secret
    except MissingSecretError as error:
        LOGGER.error("Refusing to start: %s", error)
        raise BootstrapError(str(error)) from error
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
