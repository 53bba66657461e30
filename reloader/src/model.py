from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

from kubernetes.client import V1ConfigMap, V1Secret

from reloader.src.errors import UnsupportedType


class ConfigSourceKind(str, Enum):
    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"

    def __str__(self) -> str:
        return self.value


class ReconcileRequest(NamedTuple):
    """Unit of work delivered to the reconciler: which ConfigSource changed."""

    kind: ConfigSourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ConfigSource:
    """A ConfigMap or Secret snapshot with its data normalised to bytes.

    ConfigMap text values are UTF-8 encoded and base64 payloads
    (``binaryData``, Secret ``data``) are decoded, so one equality and
    lookup routine serves both kinds.  ``resource_version`` is carried for
    logging only; it is never used to decide whether data changed.
    """

    kind: ConfigSourceKind
    namespace: str
    name: str
    data: Mapping[str, bytes] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def request(self) -> ReconcileRequest:
        return ReconcileRequest(self.kind, self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Any) -> ConfigSource:
        """Build a snapshot from a ``V1ConfigMap`` or ``V1Secret``.

        Raises :class:`UnsupportedType` for anything else.
        """
        if isinstance(obj, V1ConfigMap):
            kind = ConfigSourceKind.CONFIG_MAP
            data = _config_map_data(obj)
        elif isinstance(obj, V1Secret):
            kind = ConfigSourceKind.SECRET
            data = _decode_base64_values(obj.data)
        else:
            raise UnsupportedType(obj, "V1ConfigMap or V1Secret")

        metadata = obj.metadata
        return cls(
            kind=kind,
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            data=data,
            labels=dict(getattr(metadata, "labels", None) or {}),
            annotations=dict(getattr(metadata, "annotations", None) or {}),
            resource_version=getattr(metadata, "resource_version", None),
        )


def _config_map_data(config_map: V1ConfigMap) -> dict[str, bytes]:
    data = {
        key: ("" if value is None else str(value)).encode("utf-8")
        for key, value in (config_map.data or {}).items()
    }
    # The API server rejects keys present in both data and binaryData.
    data.update(_decode_base64_values(config_map.binary_data))
    return data


def _decode_base64_values(raw: Mapping[str, Any] | None) -> dict[str, bytes]:
    decoded: dict[str, bytes] = {}
    for key, value in (raw or {}).items():
        if value is None:
            decoded[key] = b""
        elif isinstance(value, bytes):
            decoded[key] = value
        else:
            try:
                decoded[key] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                # Compare the undecodable payload verbatim.
                decoded[key] = str(value).encode("utf-8")
    return decoded
