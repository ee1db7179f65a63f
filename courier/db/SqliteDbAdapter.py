"""
Portal Courier
Copyright (c) 2025 Portal Courier contributors

    This program is free software: you can redistribute it and/or modify it under the terms of the GNU General Public
    License as published by the Free Software Foundation, either version 3 of the License, or (at your option) any later
    version.

    This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY; without even the implied
    warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU General Public License for more
    details.

    You should have received a copy of the GNU General Public License along with this program.
    If not, see <http://www.gnu.org/licenses/>.
"""
import sqlite3
import threading
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.exc import DatabaseError as SADatabaseError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.scoping import scoped_session

from courier.logging.courierLog import getDbLogger


class DatabaseIntegrityError(Exception):
    """Raised when the underlying SQLite database fails integrity checks."""


class Database:
    def __init__(self, dbfilename):
        self.log = getDbLogger()
        self.name = ""
        try:
            self.establishSqliteConnection(dbfilename)
        except Exception as e:
            self.log.error('Could not create SQLite run log. Please try again.')
            self.log.info(e)
            raise

    def establishSqliteConnection(self, dbFileName: str):
        self.name = str(dbFileName)
        if self.name and self.name != ":memory:":
            Path(self.name).parent.mkdir(parents=True, exist_ok=True)
        self.dbsemaphore = threading.Semaphore(1)  # serializes writers sharing this adapter
        self.engine = create_engine(
            'sqlite:///{dbFileName}'.format(dbFileName=self.name),
            connect_args={'check_same_thread': False}
        )
        self.session = scoped_session(sessionmaker(bind=self.engine, autoflush=False))

        try:
            with self.engine.connect() as connection:
                connection.exec_driver_sql("SELECT 1")
        except SADatabaseError as exc:
            self.dispose()
            raise DatabaseIntegrityError(f"Failed to open SQLite database: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            self.dispose()
            raise DatabaseIntegrityError(f"Failed to open SQLite database: {exc}") from exc

        self.log.info(f"Established SQLite connection on file '{self.name}'")

    def write_lock(self):
        return self.dbsemaphore

    def dispose(self):
        """Dispose of engine/session resources."""
        try:
            self.session.remove()
        except Exception as exc:
            self.log.debug(f"Session cleanup failed: {exc}")
        try:
            self.engine.dispose()
        except Exception as exc:
            self.log.debug(f"Engine cleanup failed: {exc}")

    def verify_integrity(self):
        """
        Run PRAGMA quick_check to ensure the database is readable. Raises DatabaseIntegrityError on failure.
        """
        if not self.name or self.name == ":memory:":
            return True
        try:
            with sqlite3.connect(f"file:{self.name}?mode=ro", uri=True) as conn:
                results = conn.execute("PRAGMA quick_check").fetchall()
        except sqlite3.DatabaseError as exc:
            raise DatabaseIntegrityError(f"SQLite integrity check failed: {exc}") from exc

        if not results:
            raise DatabaseIntegrityError("SQLite integrity check returned no results.")

        errors = [row[0] for row in results if row and str(row[0]).lower() != 'ok']
        if errors:
            raise DatabaseIntegrityError("SQLite integrity check reported issues: " + "; ".join(errors))
        return True
