"""
Statement execution against a provisioned PostgreSQL instance
"""

import logging
from typing import List, Optional, Sequence

import psycopg2

from postgres_controller.diff import is_connect_directive, redact
from postgres_controller.errors import CommandExecutionError, ProvisioningError
from postgres_controller.models import Endpoint
from postgres_controller.settings import Config, WHITE, RESET

logger = logging.getLogger("postgres-controller.database")


class CommandExecutor:
    """
    Applies command lists to a database, one connection per call

    Statements run in autocommit mode, strictly in order. The first failure
    stops the call; statements that already ran stay applied.
    """

    def __init__(self, user: str = None, password: str = None,
                 admin_database: str = None, connect_timeout: int = None):
        self.user = user or Config.DB_USER
        self.password = password if password is not None else Config.DB_PASS
        self.admin_database = admin_database or Config.DB_ADMIN_DATABASE
        self.connect_timeout = connect_timeout or Config.DB_CONNECT_TIMEOUT

    def connect(self, endpoint: Endpoint, database: Optional[str] = None):
        """Open an autocommit connection to database, or the admin database"""
        conn = psycopg2.connect(
            host=endpoint.ip,
            port=endpoint.port,
            dbname=database or self.admin_database,
            user=self.user,
            password=self.password,
            connect_timeout=self.connect_timeout
        )
        conn.autocommit = True
        return conn

    def ping(self, endpoint: Endpoint):
        """
        Check that the database accepts connections

        Raises:
            ProvisioningError: if the connection or probe query fails
        """
        conn = None
        try:
            conn = self.connect(endpoint)
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
            logger.info(f"Successfully connected to {endpoint.ip}:{endpoint.port}")
        except psycopg2.Error as e:
            raise ProvisioningError(f"database at {endpoint.ip}:{endpoint.port} is not reachable: {e}") from e
        finally:
            if conn:
                conn.close()

    def apply(self, endpoint: Endpoint, commands: Sequence[str],
              database: Optional[str] = None) -> List[str]:
        """
        Execute commands in order

        Args:
            endpoint: Where the database listens
            commands: Statements to run; ``\\c <db>`` switches database
            database: Database to start in; the admin database if None

        Returns:
            The statements that were applied, in order

        Raises:
            CommandExecutionError: on the first failing statement
        """
        applied = []
        if not commands:
            return applied

        logger.info(f"Applying {len(commands)} statement(s) on {endpoint.ip}:{endpoint.port}")
        conn = None
        try:
            for index, command in enumerate(commands):
                try:
                    if is_connect_directive(command):
                        if conn:
                            conn.close()
                            conn = None
                        database = self._directive_target(command)
                        conn = self.connect(endpoint, database)
                        logger.info(f"  ↳ Connected to database {database}")
                    else:
                        if conn is None:
                            conn = self.connect(endpoint, database)
                        with conn.cursor() as cur:
                            cur.execute(command)
                        logger.info(f"  ↳ {redact(command)}")
                except psycopg2.Error as e:
                    logger.error(f"Statement {index + 1}/{len(commands)} failed: {redact(command)}: {e}")
                    raise CommandExecutionError(index, redact(command), e) from e
                applied.append(command)
        finally:
            if conn:
                conn.close()

        logger.info(f"{WHITE}Applied {len(applied)} statement(s){RESET}")
        return applied

    @staticmethod
    def _directive_target(directive: str) -> Optional[str]:
        parts = directive.strip().rstrip(";").split()
        if len(parts) < 2:
            return None
        return parts[1]
