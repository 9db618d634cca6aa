"""
Local provider: resources that live on the machine running Groundwork.

- null_resource: holds no real object; replaced whenever its triggers change
- local_file: a file on disk (e.g. a generated SSH private key)
"""

import hashlib
import logging
import os
import uuid
from typing import Any, Dict, Optional, Tuple

from ..errors import NotFoundError, ProviderError
from .base import Provider, ResourceHandler, ResourceSchema

logger = logging.getLogger(__name__)


class NullResourceHandler(ResourceHandler):
    type_name = "null_resource"
    schema = ResourceSchema(immutable=frozenset({"triggers"}))

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        resource_id = str(uuid.uuid4().int)[:19]
        return resource_id, {}

    def read(self, resource_id: str) -> Dict[str, Any]:
        return {}

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def delete(self, resource_id: str) -> None:
        return None


class LocalFileHandler(ResourceHandler):
    """
    The resource id is the absolute file path, so lookup() can adopt a
    file written by an interrupted earlier run.
    """

    type_name = "local_file"
    schema = ResourceSchema(
        immutable=frozenset({"filename", "content", "file_permission"}),
        computed=frozenset({"content_sha1"}),
        required=frozenset({"filename", "content"}),
        supports_lookup=True,
    )

    def _path(self, filename: str) -> str:
        base_dir = self.provider.config.get("base_dir") or os.getcwd()
        return os.path.abspath(os.path.join(base_dir, os.path.expanduser(filename)))

    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        path = self._path(arguments["filename"])
        content = str(arguments["content"])
        mode = int(str(arguments.get("file_permission", "0644")), 8)

        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(path, mode)
        except OSError as e:
            raise ProviderError(f"Failed to write {path}: {e}")

        logger.info(f"Wrote {path}")
        return path, {"content_sha1": _sha1(content)}

    def read(self, resource_id: str) -> Dict[str, Any]:
        try:
            with open(resource_id, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            raise NotFoundError(f"File {resource_id} does not exist")
        except OSError as e:
            raise ProviderError(f"Failed to read {resource_id}: {e}")
        return {"content": content, "content_sha1": _sha1(content)}

    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        # Every argument is immutable; the diff engine never plans an update
        raise ProviderError("local_file does not support in-place updates")

    def delete(self, resource_id: str) -> None:
        try:
            os.remove(resource_id)
        except FileNotFoundError:
            raise NotFoundError(f"File {resource_id} does not exist")
        except OSError as e:
            raise ProviderError(f"Failed to delete {resource_id}: {e}")
        logger.info(f"Deleted {resource_id}")

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        path = self._path(arguments["filename"])
        if not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            if f.read() == str(arguments["content"]):
                return path
        return None


class LocalProvider(Provider):
    name = "local"
    resource_types = {
        NullResourceHandler.type_name: NullResourceHandler,
        LocalFileHandler.type_name: LocalFileHandler,
    }


def _sha1(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()
