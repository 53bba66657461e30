from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

import yaml

from reloader.src.model import ConfigSourceKind
from reloader.src.workloads import ALL_WORKLOAD_KINDS, WorkloadKind


class SettingsError(ValueError):
    """Raised when the controller settings are invalid."""


# Kubernetes qualified name: optional DNS-subdomain prefix, then a 63-char name.
_QUALIFIED_NAME = re.compile(
    r"^(?:(?=.{1,253}/)[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*/)?"
    r"[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$"
)

_DOCUMENT_FIELDS: dict[str, str] = {
    "namespace": "namespace",
    "labelKey": "label_key",
    "configAnnotationKey": "config_annotation_key",
    "rolloutAnnotationKey": "rollout_annotation_key",
    "reloadConfigMaps": "reload_config_maps",
    "reloadSecrets": "reload_secrets",
    "workloadKinds": "workload_kinds",
    "workers": "workers",
    "retryBaseDelaySeconds": "retry_base_delay_seconds",
    "retryMaxDelaySeconds": "retry_max_delay_seconds",
    "watchTimeoutSeconds": "watch_timeout_seconds",
    "eventComponent": "event_component",
    "recordEvents": "record_events",
    "healthPort": "health_port",
    "leaderElection": "leader_election",
    "leaderElectionID": "leader_election_lease_name",
    "leaderElectionNamespace": "leader_election_namespace",
    "leaseDurationSeconds": "lease_duration_seconds",
    "renewDeadlineSeconds": "renew_deadline_seconds",
    "retryPeriodSeconds": "retry_period_seconds",
}


@dataclass(frozen=True)
class ReloaderSettings:
    """Immutable controller settings, passed explicitly to every component.

    The three object keys are the compatibility contract with existing
    cluster manifests:

    ``label_key``
        Binding label on a ConfigMap/Secret.  Its presence opts the object
        into reloading and its value selects dependent workloads.
    ``config_annotation_key``
        Optional annotation listing the data keys whose changes count.
    ``rollout_annotation_key``
        Pod template annotation stamped with the RFC 3339 rollout time.
    """

    namespace: str = ""
    label_key: str = "reloader"
    config_annotation_key: str = "reloader/config"
    rollout_annotation_key: str = "reloader/rolloutAt"
    reload_config_maps: bool = True
    reload_secrets: bool = True
    workload_kinds: tuple[WorkloadKind, ...] = ALL_WORKLOAD_KINDS
    workers: int = 2
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    watch_timeout_seconds: int = 30
    event_component: str = "reloader"
    record_events: bool = True
    health_port: int = 8080
    leader_election: bool = True
    leader_election_lease_name: str = "config-reloader-leader"
    leader_election_namespace: str = "default"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2

    @property
    def source_kinds(self) -> tuple[ConfigSourceKind, ...]:
        kinds: list[ConfigSourceKind] = []
        if self.reload_config_maps:
            kinds.append(ConfigSourceKind.CONFIG_MAP)
        if self.reload_secrets:
            kinds.append(ConfigSourceKind.SECRET)
        return tuple(kinds)

    def validate(self) -> ReloaderSettings:
        """Check the settings and return ``self``; raise :class:`SettingsError` otherwise."""
        for name in ("label_key", "config_annotation_key", "rollout_annotation_key"):
            value = getattr(self, name)
            if not isinstance(value, str) or not _QUALIFIED_NAME.match(value):
                raise SettingsError(f"{name} must be a valid Kubernetes qualified name, got: {value!r}")
        if self.config_annotation_key == self.rollout_annotation_key:
            raise SettingsError("config_annotation_key and rollout_annotation_key must differ")
        if not self.source_kinds:
            raise SettingsError("at least one of ConfigMaps or Secrets must be reloaded")
        if not self.workload_kinds:
            raise SettingsError("workload_kinds must name at least one workload kind")
        if self.workers < 1:
            raise SettingsError(f"workers must be >= 1, got: {self.workers}")
        if self.retry_base_delay_seconds <= 0:
            raise SettingsError("retry_base_delay_seconds must be > 0")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise SettingsError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        if self.watch_timeout_seconds < 1:
            raise SettingsError("watch_timeout_seconds must be >= 1")
        if not 1 <= self.health_port <= 65535:
            raise SettingsError(f"health_port must be between 1 and 65535, got: {self.health_port}")
        if not self.event_component.strip():
            raise SettingsError("event_component must be a non-empty string")
        if self.leader_election:
            if not self.leader_election_lease_name.strip():
                raise SettingsError("leader_election_lease_name must be a non-empty string")
            if min(
                self.lease_duration_seconds,
                self.renew_deadline_seconds,
                self.retry_period_seconds,
            ) < 1:
                raise SettingsError("leader election timings must be >= 1 second")
            if self.renew_deadline_seconds >= self.lease_duration_seconds:
                raise SettingsError(
                    "renew_deadline_seconds must be smaller than lease_duration_seconds"
                )
            if self.retry_period_seconds >= self.renew_deadline_seconds:
                raise SettingsError(
                    "retry_period_seconds must be smaller than renew_deadline_seconds"
                )
        return self


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    env: Mapping[str, str] | None = None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise SettingsError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise SettingsError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, env: Mapping[str, str] | None = None) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be a number") from exc


def parse_workload_kinds(value: str | list[str] | tuple[str, ...]) -> tuple[WorkloadKind, ...]:
    items = value.split(",") if isinstance(value, str) else list(value)
    kinds: list[WorkloadKind] = []
    for item in items:
        if not str(item).strip():
            continue
        try:
            kind = WorkloadKind.parse(str(item))
        except ValueError as exc:
            raise SettingsError(str(exc)) from exc
        if kind not in kinds:
            kinds.append(kind)
    return tuple(kinds)


def load_settings_from_env(env: Mapping[str, str] | None = None) -> ReloaderSettings:
    """Build settings from environment variables, falling back to the defaults.

    Validation is left to the caller so a settings document can still be
    layered on top with :func:`apply_settings_document`.
    """
    values = env if env is not None else os.environ
    defaults = ReloaderSettings()

    workload_kinds = defaults.workload_kinds
    if values.get("WORKLOAD_KINDS") is not None:
        workload_kinds = parse_workload_kinds(values["WORKLOAD_KINDS"])

    return ReloaderSettings(
        namespace=values.get("WATCH_NAMESPACE", defaults.namespace).strip(),
        label_key=values.get("RELOADER_LABEL_KEY", defaults.label_key),
        config_annotation_key=values.get(
            "RELOADER_CONFIG_ANNOTATION_KEY", defaults.config_annotation_key
        ),
        rollout_annotation_key=values.get(
            "RELOADER_ROLLOUT_ANNOTATION_KEY", defaults.rollout_annotation_key
        ),
        reload_config_maps=parse_bool(values.get("RELOAD_CONFIGMAPS"), default=True),
        reload_secrets=parse_bool(values.get("RELOAD_SECRETS"), default=True),
        workload_kinds=workload_kinds,
        workers=env_int("WORKERS", defaults.workers, env=values, minimum=1),
        retry_base_delay_seconds=env_float(
            "RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay_seconds, env=values
        ),
        retry_max_delay_seconds=env_float(
            "RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay_seconds, env=values
        ),
        watch_timeout_seconds=env_int(
            "WATCH_TIMEOUT_SECONDS", defaults.watch_timeout_seconds, env=values, minimum=1
        ),
        event_component=values.get("EVENT_COMPONENT", defaults.event_component),
        record_events=parse_bool(values.get("RECORD_EVENTS"), default=True),
        health_port=env_int(
            "HEALTH_PORT", defaults.health_port, env=values, minimum=1, maximum=65535
        ),
        leader_election=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        leader_election_lease_name=values.get(
            "LEADER_ELECTION_LEASE_NAME", defaults.leader_election_lease_name
        ),
        leader_election_namespace=values.get(
            "LEADER_ELECTION_NAMESPACE",
            values.get("POD_NAMESPACE", defaults.leader_election_namespace),
        ),
        lease_duration_seconds=env_int(
            "LEADER_ELECTION_LEASE_DURATION_SECONDS",
            defaults.lease_duration_seconds,
            env=values,
            minimum=1,
        ),
        renew_deadline_seconds=env_int(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS",
            defaults.renew_deadline_seconds,
            env=values,
            minimum=1,
        ),
        retry_period_seconds=env_int(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS",
            defaults.retry_period_seconds,
            env=values,
            minimum=1,
        ),
    )


def parse_settings_document(text: str) -> dict[str, Any]:
    """Parse the YAML settings document stored in the settings ConfigMap."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SettingsError(f"settings document is not valid YAML: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise SettingsError("settings document must be a YAML mapping")
    return document


def apply_settings_document(
    settings: ReloaderSettings, document: Mapping[str, Any]
) -> ReloaderSettings:
    """Return *settings* with the camelCase keys of *document* applied on top."""
    known = {f.name: f for f in fields(ReloaderSettings)}
    overrides: dict[str, Any] = {}
    for key, value in document.items():
        field_name = _DOCUMENT_FIELDS.get(key)
        if field_name is None:
            raise SettingsError(f"unknown settings key: {key!r}")
        if field_name == "workload_kinds":
            value = parse_workload_kinds(value)
        elif known[field_name].type == "bool":
            if not isinstance(value, bool):
                raise SettingsError(f"{key} must be a boolean, got: {value!r}")
        elif known[field_name].type in {"int", "float"}:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise SettingsError(f"{key} must be a number, got: {value!r}")
            if known[field_name].type == "int":
                value = int(value)
            else:
                value = float(value)
        elif not isinstance(value, str):
            raise SettingsError(f"{key} must be a string, got: {value!r}")
        overrides[field_name] = value
    return replace(settings, **overrides)


def load_settings(
    env: Mapping[str, str] | None = None,
    document_text: str | None = None,
) -> ReloaderSettings:
    """Resolve the effective settings.

    Resolution order:
    1. Built-in defaults.
    2. Environment variables.
    3. The YAML settings document (``SETTINGS_CONFIGMAP``), when provided.

    The result is validated before it is returned.
    """
    settings = load_settings_from_env(env)
    if document_text is not None:
        settings = apply_settings_document(settings, parse_settings_document(document_text))
    return settings.validate()
