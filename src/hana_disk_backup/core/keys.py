"""Customer-supplied encryption key files.

The key file is a JSON list of entries, each naming the resource URI the key
belongs to:

    [{"uri": "https://www.googleapis.com/compute/v1/projects/p/zones/z/disks/d",
      "key": "<base64>", "key-type": "rsa-encrypted"}]
"""

import json
from pathlib import Path

from ..errors import UsageError


def read_key(key_file: str, resource_uri: str) -> dict[str, str]:
    """Return the encryption key body for resource_uri.

    Returns:
        A CustomerEncryptionKey body for the compute API

    Raises:
        UsageError: If the file is unreadable or holds no key for the resource
    """
    try:
        entries = json.loads(Path(key_file).read_text())
    except OSError as e:
        raise UsageError(f"cannot read key file {key_file}: {e}") from e
    except json.JSONDecodeError as e:
        raise UsageError(f"key file {key_file} is not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise UsageError(f"key file {key_file} must contain a list of keys")

    for entry in entries:
        if not isinstance(entry, dict) or entry.get("uri") != resource_uri:
            continue
        if entry.get("key-type", "raw") == "rsa-encrypted":
            return {"rsaEncryptedKey": entry["key"]}
        return {"rawKey": entry["key"]}
    raise UsageError(f"no matching key for {resource_uri} in {key_file}")
