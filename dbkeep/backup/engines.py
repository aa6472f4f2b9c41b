"""
Database engine adapters.

Supports:
- PostgresAdapter: psql / pg_dump
- MySQLAdapter: mysql / mysqldump
- MariaDBAdapter: mariadb / mariadb-dump

Adapters wrap the native client tools as child processes and stream their
output through pipes, so a slow consumer back-pressures the dump tool and
no adapter ever holds a whole dump in memory.
"""

import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import ConfigurationError, DatabaseConnectionError, DumpError, RestoreError
from .job import DatabaseConfig, EngineKind
from .tunnel import SSHTunnel


logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
STDERR_TAIL = 2000


@dataclass(frozen=True)
class RestoreOptions:
    """How a restore treats the existing target database."""

    drop_database_first: bool = True


def _stderr_tail(stderr_file) -> str:
    stderr_file.seek(0)
    text = stderr_file.read().decode('utf-8', errors='replace').strip()
    return text[-STDERR_TAIL:]


class EngineAdapter(ABC):
    """Interface every engine implements."""

    kind: EngineKind

    @abstractmethod
    def check_connection(self, db: DatabaseConfig) -> str:
        """
        Verify the engine is reachable and the credentials are accepted.

        Returns:
            Server version string

        Raises:
            DatabaseConnectionError: If the engine cannot be reached
        """

    @abstractmethod
    def produce_dump_stream(self, db: DatabaseConfig) -> Iterator[bytes]:
        """
        Stream a logical dump of the database.

        Closing the returned iterator early stops the dump.

        Raises:
            DumpError: If the engine rejects or aborts the dump
        """

    @abstractmethod
    def consume_restore_stream(
        self,
        db: DatabaseConfig,
        chunks: Iterable[bytes],
        options: Optional[RestoreOptions] = None
    ) -> None:
        """
        Replay a dump stream into the database.

        Raises:
            RestoreError: If the engine rejects the stream
        """


class CommandEngineAdapter(EngineAdapter):
    """Adapter driving an engine through its command-line client and dump tool."""

    client_binary: str
    dump_binary: str
    version_query = 'SELECT version()'

    def check_connection(self, db: DatabaseConfig) -> str:
        with self._endpoint(db) as target:
            args = self._version_args(target)
            try:
                result = subprocess.run(
                    args,
                    env=self._env(target),
                    capture_output=True,
                    timeout=target.connect_timeout + 5,
                )
            except FileNotFoundError:
                raise ConfigurationError(f"{self.client_binary} is not installed or not on PATH")
            except subprocess.TimeoutExpired:
                raise DatabaseConnectionError(
                    f"Timed out connecting to {self.kind.value} at {db.host}:{db.port}"
                )

            if result.returncode != 0:
                stderr = result.stderr.decode('utf-8', errors='replace').strip()
                raise DatabaseConnectionError(
                    f"Cannot connect to {self.kind.value} at {db.host}:{db.port}: {stderr[-STDERR_TAIL:]}",
                    details={'returncode': result.returncode},
                )

            version = result.stdout.decode('utf-8', errors='replace').strip()
            logger.info(f"Connected to {db.target}: {version}")
            return version

    def produce_dump_stream(self, db: DatabaseConfig) -> Iterator[bytes]:
        with self._endpoint(db) as target:
            yield from self._stream_command(self._dump_args(target), self._env(target))

    def consume_restore_stream(
        self,
        db: DatabaseConfig,
        chunks: Iterable[bytes],
        options: Optional[RestoreOptions] = None
    ) -> None:
        options = options or RestoreOptions()

        with self._endpoint(db) as target:
            env = self._env(target)
            if options.drop_database_first:
                for statement in self._recreate_statements(target):
                    self._admin(target, env, statement)
                logger.info(f"Recreated database {db.database} before restore")

            self._feed_command(self._restore_args(target), env, chunks)

    def _restore_args(self, db: DatabaseConfig) -> List[str]:
        return self._client_args(db, db.database)

    def _stream_command(self, args: List[str], env: Dict[str, str]) -> Iterator[bytes]:
        """Run a command and yield its stdout; kill it if the consumer stops early."""
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=stderr_file, env=env)
            except OSError as e:
                raise DumpError(f"Failed to start {args[0]}: {e}")

            finished = False
            try:
                while True:
                    chunk = process.stdout.read(READ_SIZE)
                    if not chunk:
                        break
                    yield chunk

                returncode = process.wait()
                finished = True
                if returncode != 0:
                    raise DumpError(
                        f"{args[0]} failed with exit code {returncode}: {_stderr_tail(stderr_file)}",
                        details={'returncode': returncode},
                    )
            finally:
                if not finished and process.poll() is None:
                    logger.warning(f"Stopping {args[0]} (pid {process.pid}) before completion")
                    process.kill()
                    process.wait()
                process.stdout.close()

    def _feed_command(self, args: List[str], env: Dict[str, str], chunks: Iterable[bytes]):
        """Run a command, writing every chunk to its stdin."""
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(
                    args,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_file,
                    env=env,
                )
            except OSError as e:
                raise RestoreError(f"Failed to start {args[0]}: {e}")

            broken_pipe = False
            try:
                for chunk in chunks:
                    try:
                        process.stdin.write(chunk)
                    except BrokenPipeError:
                        broken_pipe = True
                        break
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    broken_pipe = True
                returncode = process.wait()
            except Exception:
                process.kill()
                process.wait()
                raise

            if returncode != 0 or broken_pipe:
                raise RestoreError(
                    f"{args[0]} rejected the restore stream (exit code {returncode}): "
                    f"{_stderr_tail(stderr_file)}",
                    details={'returncode': returncode},
                )

    def _admin(self, db: DatabaseConfig, env: Dict[str, str], statement: str):
        args = self._client_args(db, self._admin_database(db)) + self._execute_args(statement)
        try:
            result = subprocess.run(args, env=env, capture_output=True)
        except OSError as e:
            raise RestoreError(f"Failed to start {args[0]}: {e}")
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            raise RestoreError(
                f"Failed to prepare database {db.database}: {stderr[-STDERR_TAIL:]}",
                details={'returncode': result.returncode},
            )

    @contextmanager
    def _endpoint(self, db: DatabaseConfig):
        """Yield the config to connect with, opening an SSH tunnel if one is configured."""
        if db.ssh_tunnel is None:
            yield db
            return

        with SSHTunnel(db.ssh_tunnel, db.host, db.port) as tunnel:
            yield db.with_endpoint('127.0.0.1', tunnel.local_port)

    def _version_args(self, db: DatabaseConfig) -> List[str]:
        return self._client_args(db, db.database) + self._execute_args(self.version_query)

    @abstractmethod
    def _env(self, db: DatabaseConfig) -> Dict[str, str]:
        pass

    @abstractmethod
    def _client_args(self, db: DatabaseConfig, database: Optional[str]) -> List[str]:
        pass

    @abstractmethod
    def _execute_args(self, statement: str) -> List[str]:
        pass

    @abstractmethod
    def _dump_args(self, db: DatabaseConfig) -> List[str]:
        pass

    @abstractmethod
    def _recreate_statements(self, db: DatabaseConfig) -> List[str]:
        pass

    @abstractmethod
    def _admin_database(self, db: DatabaseConfig) -> Optional[str]:
        pass


class PostgresAdapter(CommandEngineAdapter):
    kind = EngineKind.POSTGRES
    client_binary = 'psql'
    dump_binary = 'pg_dump'

    SYSTEM_SCHEMAS = ['information_schema', 'pg_catalog', 'pg_toast', 'pg_temp*', 'pg_toast_temp*']

    def _env(self, db: DatabaseConfig) -> Dict[str, str]:
        env = _base_env()
        env['PGCONNECT_TIMEOUT'] = str(db.connect_timeout)
        if db.password:
            env['PGPASSWORD'] = db.password
        return env

    def _client_args(self, db: DatabaseConfig, database: Optional[str]) -> List[str]:
        return [
            self.client_binary,
            '-h', db.host,
            '-p', str(db.port),
            '-U', db.username,
            '-d', database or 'postgres',
            '-X',
            '-q',
            '-v', 'ON_ERROR_STOP=1',
        ]

    def _execute_args(self, statement: str) -> List[str]:
        return ['-tA', '-c', statement]

    def _restore_args(self, db: DatabaseConfig) -> List[str]:
        # All or nothing: a rejected statement rolls back the whole replay
        return self._client_args(db, db.database) + ['--single-transaction']

    def _dump_args(self, db: DatabaseConfig) -> List[str]:
        args = [
            self.dump_binary,
            '-h', db.host,
            '-p', str(db.port),
            '-U', db.username,
            '-d', db.database,
            '--format=plain',
            '--encoding=UTF8',
            '--clean',
            '--if-exists',
            '--no-owner',
            '--blobs',
        ]
        args += [f'--exclude-schema={schema}' for schema in self.SYSTEM_SCHEMAS]
        return args

    def _recreate_statements(self, db: DatabaseConfig) -> List[str]:
        name = db.database.replace("'", "''")
        identifier = '"' + db.database.replace('"', '""') + '"'
        return [
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname = '{name}' AND pid <> pg_backend_pid()",
            f'DROP DATABASE IF EXISTS {identifier}',
            f'CREATE DATABASE {identifier}',
        ]

    def _admin_database(self, db: DatabaseConfig) -> Optional[str]:
        return 'postgres'


class MySQLAdapter(CommandEngineAdapter):
    kind = EngineKind.MYSQL
    client_binary = 'mysql'
    dump_binary = 'mysqldump'
    version_query = 'SELECT VERSION()'

    def _env(self, db: DatabaseConfig) -> Dict[str, str]:
        env = _base_env()
        if db.password:
            env['MYSQL_PWD'] = db.password
        return env

    def _connection_args(self, db: DatabaseConfig) -> List[str]:
        return [
            '-h', db.host,
            '-P', str(db.port),
            '-u', db.username,
            '--protocol=TCP',
            f'--connect-timeout={db.connect_timeout}',
        ]

    def _client_args(self, db: DatabaseConfig, database: Optional[str]) -> List[str]:
        args = [self.client_binary] + self._connection_args(db)
        if database:
            args.append(database)
        return args

    def _execute_args(self, statement: str) -> List[str]:
        return ['-N', '-B', '-e', statement]

    def _dump_args(self, db: DatabaseConfig) -> List[str]:
        return [self.dump_binary] + self._connection_args(db) + [
            '--single-transaction',
            '--routines',
            '--triggers',
            '--events',
            db.database,
        ]

    def _recreate_statements(self, db: DatabaseConfig) -> List[str]:
        identifier = '`' + db.database.replace('`', '``') + '`'
        return [f'DROP DATABASE IF EXISTS {identifier}; CREATE DATABASE {identifier}']

    def _admin_database(self, db: DatabaseConfig) -> Optional[str]:
        return None


class MariaDBAdapter(MySQLAdapter):
    kind = EngineKind.MARIADB
    client_binary = 'mariadb'
    dump_binary = 'mariadb-dump'


def _base_env() -> Dict[str, str]:
    return dict(os.environ)


ADAPTERS = {
    EngineKind.POSTGRES: PostgresAdapter,
    EngineKind.MYSQL: MySQLAdapter,
    EngineKind.MARIADB: MariaDBAdapter,
}


def create_adapter(kind) -> EngineAdapter:
    """
    Factory function to create the adapter for an engine.

    Args:
        kind: EngineKind or its string value

    Returns:
        EngineAdapter instance

    Raises:
        ConfigurationError: If the engine is unknown
    """
    if not isinstance(kind, EngineKind):
        kind = EngineKind.parse(kind)
    return ADAPTERS[kind]()
