"""
SSH port forwarding for databases that are only reachable through a bastion.

A local listener on 127.0.0.1 accepts connections from the dump and restore
tools and forwards each one over a paramiko direct-tcpip channel.
"""

import logging
import select
import socket
import threading
from pathlib import Path
from typing import Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import ConfigurationError, DatabaseConnectionError
from .job import SSHTunnelConfig


logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BUFFER_SIZE = 32 * 1024


class SSHTunnel:
    """
    Forwards a local ephemeral port to remote_host:remote_port via SSH.

    Usage:
        with SSHTunnel(config, 'db.internal', 5432) as tunnel:
            connect('127.0.0.1', tunnel.local_port)
    """

    def __init__(self, config: SSHTunnelConfig, remote_host: str, remote_port: int, timeout: int = 30):
        self.config = config
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.timeout = timeout
        self.local_port: Optional[int] = None

        self.ssh_client = None
        self._server = None
        self._stopped = threading.Event()
        self._threads = []

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            DatabaseConnectionError: If connection fails
        """
        connect_kwargs = {
            'hostname': self.config.host,
            'port': self.config.port,
            'username': self.config.username,
            'timeout': self.timeout
        }

        if self.config.password:
            connect_kwargs['password'] = self.config.password
        elif self.config.private_key:
            key_path = Path(self.config.private_key).expanduser()
            if not key_path.exists():
                raise ConfigurationError(f"Private key not found: {self.config.private_key}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise ConfigurationError("Either password or private_key must be provided for the SSH tunnel")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise DatabaseConnectionError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise DatabaseConnectionError(f"SSH connection to {self.config.host} failed: {e}")

    def start(self) -> int:
        """
        Connect to the SSH server and start listening locally.

        Returns:
            Local port forwarding to the remote endpoint
        """
        self._connect()

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(('127.0.0.1', 0))
        self._server.listen(8)
        self._server.settimeout(POLL_INTERVAL)
        self.local_port = self._server.getsockname()[1]

        thread = threading.Thread(target=self._accept_loop, name='ssh-tunnel', daemon=True)
        thread.start()
        self._threads.append(thread)

        logger.info(
            f"SSH tunnel 127.0.0.1:{self.local_port} -> {self.remote_host}:{self.remote_port} "
            f"via {self.config.host}"
        )
        return self.local_port

    def _accept_loop(self):
        while not self._stopped.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            thread = threading.Thread(target=self._forward, args=(conn,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _forward(self, conn: socket.socket):
        transport = self.ssh_client.get_transport()
        try:
            channel = transport.open_channel(
                'direct-tcpip',
                (self.remote_host, self.remote_port),
                conn.getpeername(),
            )
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"SSH tunnel could not open a channel to {self.remote_host}:{self.remote_port}: {e}")
            conn.close()
            return

        try:
            while not self._stopped.is_set():
                readable, _, _ = select.select([conn, channel], [], [], POLL_INTERVAL)
                if conn in readable:
                    data = conn.recv(BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in readable:
                    data = channel.recv(BUFFER_SIZE)
                    if not data:
                        break
                    conn.sendall(data)
        except OSError as e:
            logger.debug(f"SSH tunnel connection closed: {e}")
        finally:
            channel.close()
            conn.close()

    def stop(self):
        """Close the listener and the SSH connection."""
        self._stopped.set()

        if self._server:
            self._server.close()
            self._server = None

        for thread in self._threads:
            thread.join(timeout=POLL_INTERVAL * 2)
        self._threads = []

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def __enter__(self) -> 'SSHTunnel':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
