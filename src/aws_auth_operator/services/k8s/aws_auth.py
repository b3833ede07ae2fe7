"""Maintenance of ``mapRoles`` entries in the aws-auth ConfigMap."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ... import metrics
from ...errors import ConfigurationError, ConflictError
from ...utils.rate_limit import rate_limit_k8s
from .store import translate_api_exception

logger = logging.getLogger(__name__)

MAP_ROLES_KEY = "mapRoles"


def parse_map_roles(text: str | None) -> list[dict[str, Any]]:
    """Parse the YAML list stored under ``mapRoles``.

    Raises:
        ConfigurationError: If the value is not a YAML list of mappings
    """
    if not text or not text.strip():
        return []
    try:
        entries = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"aws-auth {MAP_ROLES_KEY} is not valid YAML: {e}") from e
    if entries is None:
        return []
    if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
        raise ConfigurationError(f"aws-auth {MAP_ROLES_KEY} must be a list of role mappings")
    return entries


def dump_map_roles(entries: list[dict[str, Any]]) -> str:
    return yaml.safe_dump(entries, default_flow_style=False, sort_keys=False)


def entry_matches(entry: dict[str, Any], username: str, groups: list[str]) -> bool:
    """Check whether an existing entry already grants this username and groups."""
    return entry.get("username") == username and sorted(entry.get("groups") or []) == sorted(groups)


class AwsAuthConfigMap:
    """Adds, updates and removes role mappings in the aws-auth ConfigMap.

    Every write is a JSON patch that first tests the ConfigMap's
    resourceVersion, so concurrent edits by other writers surface as
    ConflictError instead of being overwritten.
    """

    def __init__(
        self,
        api: client.CoreV1Api | None = None,
        namespace: str = "kube-system",
        name: str = "aws-auth",
    ) -> None:
        self.api = api or client.CoreV1Api()
        self.namespace = namespace
        self.name = name

    def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        start_time = time.time()
        try:
            result = rate_limit_k8s(func)(**kwargs)
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
            return result
        except ApiException:
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
            raise
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)

    def _read(self) -> tuple[list[dict[str, Any]], str | None, bool] | None:
        """Read the ConfigMap.

        Returns:
            (entries, resourceVersion, whether mapRoles exists), or None if
            the ConfigMap does not exist
        """
        try:
            config_map = self._call(
                "read_aws_auth", self.api.read_namespaced_config_map, name=self.name, namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, "read_aws_auth") from e
        data = config_map.data or {}
        has_key = MAP_ROLES_KEY in data
        return parse_map_roles(data.get(MAP_ROLES_KEY)), config_map.metadata.resource_version, has_key

    def _write(self, entries: list[dict[str, Any]], resource_version: str | None, has_key: bool) -> None:
        patch = [
            {"op": "test", "path": "/metadata/resourceVersion", "value": resource_version},
            {"op": "replace" if has_key else "add", "path": f"/data/{MAP_ROLES_KEY}", "value": dump_map_roles(entries)},
        ]
        try:
            self._call(
                "patch_aws_auth",
                self.api.patch_namespaced_config_map,
                name=self.name,
                namespace=self.namespace,
                body=patch,
            )
        except ApiException as e:
            # 422 is how a failed "test" operation is reported
            if e.status in (409, 422):
                raise ConflictError(f"aws-auth ConfigMap changed concurrently: {e.status} {e.reason}") from e
            raise translate_api_exception(e, "patch_aws_auth") from e

    def get_entry(self, role_arn: str) -> dict[str, Any] | None:
        """Return the mapping entry for a role, if present."""
        current = self._read()
        if current is None:
            return None
        entries, _, _ = current
        for entry in entries:
            if entry.get("rolearn") == role_arn:
                return entry
        return None

    def upsert_entry(self, role_arn: str, username: str, groups: list[str]) -> bool:
        """Ensure exactly one entry maps the role to the username and groups.

        Returns:
            True if the ConfigMap was changed

        Raises:
            ConfigurationError: If the aws-auth ConfigMap does not exist
            ConflictError: If the ConfigMap changed while being updated
        """
        current = self._read()
        if current is None:
            raise ConfigurationError(f"ConfigMap {self.namespace}/{self.name} does not exist")
        entries, resource_version, has_key = current

        matching = [entry for entry in entries if entry.get("rolearn") == role_arn]
        if len(matching) == 1 and entry_matches(matching[0], username, groups):
            return False

        desired = {"rolearn": role_arn, "username": username, "groups": list(groups)}
        updated = []
        replaced = False
        for entry in entries:
            if entry.get("rolearn") != role_arn:
                updated.append(entry)
            elif not replaced:
                updated.append(desired)
                replaced = True
        if not replaced:
            updated.append(desired)

        self._write(updated, resource_version, has_key)
        logger.info(f"Mapped role {role_arn} to {username} in {self.namespace}/{self.name}")
        return True

    def remove_entry(self, role_arn: str) -> bool:
        """Remove every entry for a role.

        Returns:
            True if the ConfigMap was changed
        """
        current = self._read()
        if current is None:
            return False
        entries, resource_version, has_key = current
        remaining = [entry for entry in entries if entry.get("rolearn") != role_arn]
        if len(remaining) == len(entries):
            return False

        self._write(remaining, resource_version, has_key)
        logger.info(f"Removed mapping of role {role_arn} from {self.namespace}/{self.name}")
        return True
