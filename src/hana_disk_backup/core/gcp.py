"""Authorized Google API clients with a bounded HTTP timeout."""

import google.auth
import google_auth_httplib2
import httplib2
from googleapiclient import discovery

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_HTTP_TIMEOUT = 60


def build_service(api: str, version: str, timeout: int = DEFAULT_HTTP_TIMEOUT):
    """Build a discovery client using the instance's default credentials."""
    credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    http = google_auth_httplib2.AuthorizedHttp(
        credentials, http=httplib2.Http(timeout=timeout)
    )
    return discovery.build(api, version, http=http, cache_discovery=False)
