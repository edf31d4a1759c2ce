"""HANA backup catalog control.

The controller issues the three blocking admin statements of a data snapshot
(create, confirm, abandon). Any database error propagates. A prepared
snapshot that is never closed keeps the HANA backup lock held.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from hdbcli import dbapi

from ..errors import ExternalServiceError, UsageError
from ..models import CredentialMode, DBSnapshotToken

logger = logging.getLogger(__name__)

PREPARED_SNAPSHOT_QUERY = (
    "SELECT BACKUP_ID FROM M_BACKUP_CATALOG "
    "WHERE ENTRY_TYPE_NAME = 'data snapshot' AND STATE_NAME = 'prepared'"
)
CREATE_SNAPSHOT = "BACKUP DATA FOR FULL SYSTEM CREATE SNAPSHOT COMMENT '{comment}'"
CONFIRM_SNAPSHOT = (
    "BACKUP DATA FOR FULL SYSTEM CLOSE SNAPSHOT BACKUP_ID {backup_id} "
    "SUCCESSFUL '{external_id}'"
)
ABANDON_SNAPSHOT = (
    "BACKUP DATA FOR FULL SYSTEM CLOSE SNAPSHOT BACKUP_ID {backup_id} "
    "UNSUCCESSFUL '{reason}'"
)


class Connection(Protocol):
    """The part of a database connection the controller needs."""

    def execute(self, statement: str) -> list[tuple[Any, ...]]: ...

    def close(self) -> None: ...


class SecretReader(Protocol):
    def read(self, project: str, secret_name: str) -> str: ...


def quote_literal(value: str) -> str:
    """Escape a value for use inside a single quoted SQL literal."""
    return value.replace("'", "''")


class HanaConnection:
    """Connection adapter around an hdbcli connection."""

    def __init__(self, connection) -> None:
        self._connection = connection

    def execute(self, statement: str) -> list[tuple[Any, ...]]:
        cursor = self._connection.cursor()
        try:
            cursor.execute(statement)
            if cursor.description is None:
                return []
            return [tuple(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def close(self) -> None:
        self._connection.close()


@dataclass(frozen=True)
class ConnectParams:
    """Where and how to connect to the system database."""

    host: str = "localhost"
    port: str = ""
    user: str = ""
    password: str = ""
    password_secret: str = ""
    userstore_key: str = ""
    project: str = ""
    timeout_ms: int = 30000

    @property
    def credential_mode(self) -> CredentialMode:
        if self.userstore_key:
            return CredentialMode.USERSTORE_KEY
        if self.password_secret:
            return CredentialMode.PASSWORD_SECRET
        return CredentialMode.PASSWORD


class HanaConnector:
    """Opens hdbcli connections using one of the supported credential modes."""

    def __init__(self, secrets: Optional[SecretReader] = None, driver=dbapi) -> None:
        self.secrets = secrets
        self.driver = driver

    def connect(self, params: ConnectParams) -> HanaConnection:
        mode = params.credential_mode
        logger.info(
            "Connecting to HANA at %s:%s using %s",
            params.host,
            params.port or "(userstore)",
            mode.value,
        )
        if mode is CredentialMode.USERSTORE_KEY:
            kwargs = {"key": params.userstore_key}
        else:
            kwargs = {
                "address": params.host,
                "port": int(params.port),
                "user": params.user,
                "password": self._password(params),
            }
        kwargs["connectTimeout"] = params.timeout_ms
        try:
            return HanaConnection(self.driver.connect(**kwargs))
        except self.driver.Error as e:
            raise ExternalServiceError(f"failed to connect to HANA: {e}") from e

    def _password(self, params: ConnectParams) -> str:
        if params.credential_mode is not CredentialMode.PASSWORD_SECRET:
            return params.password
        if self.secrets is None:
            raise UsageError("password-secret given but no secret reader configured")
        return self.secrets.read(params.project, params.password_secret)


class DatabaseSnapshotController:
    """Creates, confirms and abandons HANA data snapshots."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self._closed: dict[str, str] = {}

    def _run(self, statement: str) -> list[tuple[Any, ...]]:
        logger.debug("HANA: %s", statement)
        try:
            return self.connection.execute(statement)
        except Exception as e:
            raise ExternalServiceError(f"HANA statement failed: {e}") from e

    def find_prepared(self) -> Optional[DBSnapshotToken]:
        """Return the data snapshot currently prepared in the catalog, if any."""
        rows = self._run(PREPARED_SNAPSHOT_QUERY)
        if not rows or rows[0][0] in (None, ""):
            return None
        return DBSnapshotToken(backup_id=str(rows[0][0]))

    def create(self, comment: str) -> DBSnapshotToken:
        """Prepare a new data snapshot and return its token."""
        logger.info("Creating new HANA snapshot with comment %r", comment)
        self._run(CREATE_SNAPSHOT.format(comment=quote_literal(comment)))
        prepared = self.find_prepared()
        if prepared is None:
            raise ExternalServiceError("could not read ID of the newly created snapshot")
        token = DBSnapshotToken(backup_id=prepared.backup_id, comment=comment)
        logger.info("HANA snapshot %s prepared", token.backup_id)
        return token

    def confirm(self, token: DBSnapshotToken, external_id: str) -> None:
        """Mark the data snapshot successful, naming the disk snapshot."""
        self._check_open(token, "confirm")
        self._run(
            CONFIRM_SNAPSHOT.format(
                backup_id=_backup_id(token), external_id=quote_literal(external_id)
            )
        )
        self._closed[token.backup_id] = "confirmed"
        logger.info("HANA snapshot %s marked as successful", token.backup_id)

    def abandon(self, token: DBSnapshotToken, reason: str) -> None:
        """Mark the data snapshot unsuccessful.

        Abandoning a token this controller already closed does nothing.
        """
        state = self._closed.get(token.backup_id)
        if state is not None:
            logger.debug("HANA snapshot %s already %s", token.backup_id, state)
            return
        self._run(
            ABANDON_SNAPSHOT.format(
                backup_id=_backup_id(token), reason=quote_literal(reason[:200])
            )
        )
        self._closed[token.backup_id] = "abandoned"
        logger.info("HANA snapshot %s abandoned", token.backup_id)

    def _check_open(self, token: DBSnapshotToken, action: str) -> None:
        state = self._closed.get(token.backup_id)
        if state is not None:
            raise ExternalServiceError(
                f"cannot {action} HANA snapshot {token.backup_id}, it is already {state}"
            )


def _backup_id(token: DBSnapshotToken) -> str:
    if not token.backup_id.isdigit():
        raise ExternalServiceError(f"invalid HANA backup id: {token.backup_id!r}")
    return token.backup_id
