from __future__ import annotations

import logging
from typing import Any

from reloader.src.errors import InvalidDeclaration, UnsupportedType
from reloader.src.model import ConfigSource
from reloader.src.settings import ReloaderSettings

LOGGER = logging.getLogger(__name__)


def parse_scoped_keys(value: str) -> tuple[str, ...]:
    """Split a scoped-field annotation value (``k1, k2,k3``) into data keys.

    Whitespace is trimmed, empty segments (trailing commas) are skipped and
    duplicates are collapsed.  A value naming no key at all is ambiguous
    ("watch nothing" or "watch everything"), so it raises
    :class:`InvalidDeclaration` instead of guessing.
    """
    keys: list[str] = []
    for part in value.split(","):
        key = part.strip()
        if key and key not in keys:
            keys.append(key)
    if not keys:
        raise InvalidDeclaration(f"scoped-field annotation names no data keys: {value!r}")
    return tuple(keys)


class EventFilter:
    """Decides whether an update to a ConfigMap or Secret warrants a rollout.

    Runs on the watch delivery path, so it only compares the two snapshots
    it is given and never calls the API server.

    An update is admitted when:

    1. the new object carries the binding label, and
    2. its data differs from the old object's data, and
    3. if the scoped-field annotation is present, at least one of the listed
       keys changed value.  A key missing on one side counts as a distinct
       value, so deleting a listed key is a change; keys missing on both
       sides are ignored.
    """

    def __init__(self, settings: ReloaderSettings) -> None:
        self.settings = settings

    def admit(self, old: ConfigSource, new: ConfigSource) -> bool:
        if old.kind is not new.kind:
            LOGGER.error(
                "Ignoring update of %s/%s: kind changed from %s to %s",
                new.namespace,
                new.name,
                old.kind,
                new.kind,
            )
            return False

        if self.settings.label_key not in new.labels:
            return False

        if old.data == new.data:
            LOGGER.debug("Ignoring update of %s/%s without data change", new.namespace, new.name)
            return False

        raw_keys = new.annotations.get(self.settings.config_annotation_key)
        if raw_keys is None:
            return True

        try:
            scoped_keys = parse_scoped_keys(raw_keys)
        except InvalidDeclaration as exc:
            LOGGER.error(
                "Ignoring update of %s %s/%s: %s",
                new.kind,
                new.namespace,
                new.name,
                exc,
            )
            return False

        for key in scoped_keys:
            if old.data.get(key) != new.data.get(key):
                return True

        LOGGER.debug(
            "Ignoring update of %s/%s: none of %s changed",
            new.namespace,
            new.name,
            ",".join(scoped_keys),
        )
        return False

    def admit_objects(self, old_obj: Any, new_obj: Any) -> bool:
        """Run :meth:`admit` on raw ``V1ConfigMap``/``V1Secret`` objects.

        Objects of any other type, or an old/new pair of different kinds,
        are logged as :class:`UnsupportedType` and dropped.
        """
        try:
            old = ConfigSource.from_object(old_obj)
            new = ConfigSource.from_object(new_obj)
            if old.kind is not new.kind:
                raise UnsupportedType(new_obj, f"a {old.kind} like the previous object")
        except UnsupportedType as exc:
            LOGGER.error("Ignoring update: %s", exc)
            return False
        return self.admit(old, new)

