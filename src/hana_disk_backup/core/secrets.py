"""HANA password lookup in Secret Manager."""

import base64
import logging

from googleapiclient.errors import HttpError

from ..errors import ExternalServiceError
from .gcp import build_service

logger = logging.getLogger(__name__)


class SecretManagerReader:
    """Reads the latest version of a secret."""

    def __init__(self, service=None) -> None:
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = build_service("secretmanager", "v1")
        return self._service

    def read(self, project: str, secret_name: str) -> str:
        name = f"projects/{project}/secrets/{secret_name}/versions/latest"
        logger.debug("Reading secret %s", name)
        try:
            response = (
                self.service.projects()
                .secrets()
                .versions()
                .access(name=name)
                .execute()
            )
        except HttpError as e:
            raise ExternalServiceError(f"failed to read secret {secret_name}: {e}") from e
        data = response.get("payload", {}).get("data", "")
        return base64.b64decode(data).decode("utf-8").strip()
