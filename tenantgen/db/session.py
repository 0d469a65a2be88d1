from __future__ import annotations
import asyncio
import logging
import ssl
from pathlib import Path
from typing import Optional

from cassandra import ConsistencyLevel
from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import EXEC_PROFILE_DEFAULT, Cluster, ExecutionProfile, Session
from cassandra.policies import DCAwareRoundRobinPolicy
from cassandra.query import dict_factory

from tenantgen.errors import ConfigurationFailure

logger = logging.getLogger(__name__)

KEYSPACES_PORT = 9142


def keyspaces_host(region: str) -> str:
    """Fixed service endpoint for a region; no discovery."""
    return f"cassandra.{region}.amazonaws.com"


def build_ssl_context(root_cert_path: str) -> ssl.SSLContext:
    """
    TLS client context trusting only the certificates in root_cert_path.

    PROTOCOL_TLS_CLIENT starts with an empty trust store (unlike
    ssl.create_default_context) and enables hostname checking. No client
    certificate is loaded.

    Raises:
        ConfigurationFailure: file missing, unreadable, or not valid PEM.
    """
    path = Path(root_cert_path)
    if not path.is_file():
        raise ConfigurationFailure(f"root certificate not found: {root_cert_path}")

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        ctx.load_verify_locations(cafile=str(path))
    except (ssl.SSLError, OSError, ValueError) as exc:
        raise ConfigurationFailure(
            f"unparseable root certificate {root_cert_path}: {exc}"
        ) from exc
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


class SecureSessionProvider:
    """
    Owns the single TLS-authenticated session to the tenant-config database.

    connect() is called once from the application lifespan; the returned
    Session is shared read-only by every request until close() at shutdown.
    The driver multiplexes concurrent requests over its own connection
    pool, so callers never lock around it.
    """

    def __init__(
        self,
        region: str,
        root_cert_path: str,
        username: str,
        password: str,
        request_timeout_s: float = 10.0,
    ) -> None:
        self._region = region
        self._root_cert_path = root_cert_path
        self._username = username
        self._password = password
        self._request_timeout_s = request_timeout_s
        self._cluster: Optional[Cluster] = None
        self._session: Optional[Session] = None

    @property
    def host(self) -> str:
        return keyspaces_host(self._region)

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("session not initialized")
        return self._session

    @property
    def connected(self) -> bool:
        return self._session is not None and not self._session.is_shutdown

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_cluster(self) -> Cluster:
        """Assemble the driver Cluster; validates credentials and TLS material."""
        if not self._username:
            raise ConfigurationFailure("missing database username")
        if not self._password:
            raise ConfigurationFailure("missing database password")

        ssl_context = build_ssl_context(self._root_cert_path)
        profile = ExecutionProfile(
            load_balancing_policy=DCAwareRoundRobinPolicy(local_dc=self._region),
            consistency_level=ConsistencyLevel.LOCAL_QUORUM,
            request_timeout=self._request_timeout_s,
            row_factory=dict_factory,
        )
        return Cluster(
            contact_points=[self.host],
            port=KEYSPACES_PORT,
            ssl_context=ssl_context,
            ssl_options={"server_hostname": self.host},
            auth_provider=PlainTextAuthProvider(
                username=self._username, password=self._password
            ),
            execution_profiles={EXEC_PROFILE_DEFAULT: profile},
        )

    async def connect(self) -> Session:
        """
        Open the session. No retry: any failure is fatal for this process.

        Raises:
            ConfigurationFailure: bad TLS material, missing credentials,
            or handshake/authentication failure.
        """
        if self._session is not None:
            return self._session

        cluster = self.build_cluster()
        loop = asyncio.get_running_loop()
        try:
            # Cluster.connect() blocks on the handshake.
            session = await loop.run_in_executor(None, cluster.connect)
        except Exception as exc:
            await loop.run_in_executor(None, cluster.shutdown)
            raise ConfigurationFailure(f"session build: {exc}") from exc

        self._cluster = cluster
        self._session = session
        logger.info("Database session established: %s:%d", self.host, KEYSPACES_PORT)
        return session

    async def close(self) -> None:
        if self._cluster is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._cluster.shutdown)
        self._cluster = None
        self._session = None
        logger.info("Database session closed.")
