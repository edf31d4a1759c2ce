"""Current instance identity from the Compute Engine metadata server."""

import logging

import httplib2

from ..errors import PreconditionError
from ..models import InstanceProperties

logger = logging.getLogger(__name__)

METADATA_URL = "http://metadata.google.internal/computeMetadata/v1/"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}


class MetadataReader:
    """Reads project, zone and instance name of the running instance."""

    def __init__(self, http=None, timeout: int = 10) -> None:
        self.http = http or httplib2.Http(timeout=timeout)

    def _get(self, path: str) -> str:
        try:
            response, content = self.http.request(
                METADATA_URL + path, "GET", headers=METADATA_HEADERS
            )
        except (httplib2.HttpLib2Error, OSError) as e:
            raise PreconditionError(
                f"metadata server not reachable, is this a Compute Engine instance? ({e})"
            ) from e
        if response.status != 200:
            raise PreconditionError(
                f"metadata server returned {response.status} for {path}"
            )
        return content.decode("utf-8").strip()

    def read(self) -> InstanceProperties:
        zone = self._get("instance/zone").rsplit("/", 1)[-1]
        properties = InstanceProperties(
            project=self._get("project/project-id"),
            zone=zone,
            instance_name=self._get("instance/name"),
            instance_id=self._get("instance/id"),
        )
        logger.debug("Instance properties: %s", properties)
        return properties
