"""TOML-based cluster configuration.

Loads a cluster definition file (``cluster.toml`` by default), applies
defaults, and builds an immutable ClusterSpec. It is built once and
passed explicitly to every component that needs it.

Example ``cluster.toml``::

    hetzner_token = "..."          # or export HCLOUD_TOKEN
    cluster_name = "test"
    kubeconfig_path = "./kubeconfig"
    k3s_version = "v1.26.4+k3s1"
    location = "nbg1"

    [masters]
    instance_type = "cpx21"
    instance_count = 3

    [[worker_node_pools]]
    name = "small"
    instance_type = "cpx21"
    instance_count = 2
"""

from __future__ import annotations

import ipaddress
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hetzner_k3s.core.exceptions import ConfigurationError

type RawConfig = dict[str, Any]

TOKEN_ENV = "HCLOUD_TOKEN"
DEFAULT_CONFIG_PATHS = (
    Path("cluster.toml"),
    Path("/etc/hetzner-k3s/cluster.toml"),
)

LOCATIONS = ("nbg1", "fsn1", "hel1", "ash", "hil")

_DNS_LABEL = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")
_K3S_VERSION = re.compile(r"^v\d+\.\d+\.\d+(-[0-9A-Za-z.-]+)?(\+[0-9A-Za-z.-]+)?$")


def resolve_path(path: str) -> Path:
    """Expand ``~`` to the user's home directory."""
    return Path(path).expanduser()


# =============================================================================
# Pools
# =============================================================================


@dataclass(frozen=True, slots=True)
class MasterPool:
    instance_type: str
    instance_count: int


@dataclass(frozen=True, slots=True)
class WorkerPool:
    """A statically sized pool of worker nodes.

    ``location`` falls back to the cluster location when empty.
    """

    name: str
    instance_type: str
    instance_count: int
    location: str = ""


@dataclass(frozen=True, slots=True)
class AutoscalingPool:
    """A pool managed by the cluster autoscaler."""

    name: str
    instance_type: str
    instance_min: int
    instance_max: int
    location: str = ""


# =============================================================================
# Cluster spec
# =============================================================================


@dataclass(frozen=True, slots=True)
class ClusterSpec:
    """Immutable description of the desired cluster.

    Attributes:
        hetzner_token: Hetzner Cloud API token.
        cluster_name: Name used as prefix for every resource.
        kubeconfig_path: Where the admin kubeconfig is written.
        k3s_version: k3s release to install (e.g. ``v1.26.4+k3s1``).
        location: Default location for masters and worker pools.
        masters: Control-plane pool.
        worker_node_pools: Statically sized worker pools.
        autoscaling_node_pools: Pools handed to the cluster autoscaler.
    """

    hetzner_token: str
    cluster_name: str
    k3s_version: str
    location: str
    masters: MasterPool
    kubeconfig_path: Path = Path("kubeconfig")
    public_ssh_key_path: Path = field(default_factory=lambda: resolve_path("~/.ssh/id_rsa.pub"))
    private_ssh_key_path: Path = field(default_factory=lambda: resolve_path("~/.ssh/id_rsa"))
    ssh_allowed_networks: tuple[str, ...] = ("0.0.0.0/0",)
    api_allowed_networks: tuple[str, ...] = ("0.0.0.0/0",)
    verify_host_key: bool = False
    worker_node_pools: tuple[WorkerPool, ...] = ()
    autoscaling_node_pools: tuple[AutoscalingPool, ...] = ()
    schedule_workloads_on_masters: bool = False
    schedule_csi_controller_on_master: bool = False
    enable_encryption: bool = False
    fix_multipath: bool = False
    hcloud_volume_is_default_storage_class: bool = True
    image: str = "ubuntu-22.04"
    existing_network: str = ""
    network_ip_range: str = "10.0.0.0/16"
    additional_packages: tuple[str, ...] = ()
    post_create_commands: tuple[str, ...] = ()
    default_nameservers: tuple[str, ...] = ("1.1.1.1", "8.8.8.8")
    cluster_autoscaler_args: tuple[str, ...] = ()
    kube_api_server_args: tuple[str, ...] = ()
    kube_scheduler_args: tuple[str, ...] = ()
    kube_controller_manager_args: tuple[str, ...] = ()
    kube_cloud_controller_manager_args: tuple[str, ...] = ()
    kubelet_args: tuple[str, ...] = ()
    kube_proxy_args: tuple[str, ...] = ()

    @property
    def network_name(self) -> str:
        return self.existing_network or self.cluster_name

    @property
    def is_ha(self) -> bool:
        return self.masters.instance_count > 1

    @property
    def worker_count(self) -> int:
        return sum(pool.instance_count for pool in self.worker_node_pools)

    def pool_location(self, pool: WorkerPool | AutoscalingPool) -> str:
        return pool.location or self.location


# =============================================================================
# Loading
# =============================================================================


def _read_toml(path: Path) -> RawConfig:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _find_config(path: Path | None) -> Path:
    if path is not None:
        return resolve_path(str(path))
    for candidate in DEFAULT_CONFIG_PATHS:
        if candidate.is_file():
            return candidate
    raise ConfigurationError(
        "No configuration file found. Looked in: "
        + ", ".join(str(p) for p in DEFAULT_CONFIG_PATHS)
    )


def _strings(raw: RawConfig, key: str) -> tuple[str, ...] | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigurationError(f"'{key}' must be a list of strings")
    return tuple(str(v) for v in value)


def _integer(raw: RawConfig, key: str, where: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise ConfigurationError(f"'{where}.{key}' must be an integer, got {value!r}")


def _build_worker_pool(raw: RawConfig) -> WorkerPool:
    return WorkerPool(
        name=str(raw.get("name", "")),
        instance_type=str(raw.get("instance_type", "")),
        instance_count=_integer(raw, "instance_count", "worker_node_pools"),
        location=str(raw.get("location", "")),
    )


def _build_autoscaling_pool(raw: RawConfig) -> AutoscalingPool:
    return AutoscalingPool(
        name=str(raw.get("name", "")),
        instance_type=str(raw.get("instance_type", "")),
        instance_min=_integer(raw, "instance_min", "autoscaling_node_pools"),
        instance_max=_integer(raw, "instance_max", "autoscaling_node_pools"),
        location=str(raw.get("location", "")),
    )


_LIST_KEYS = (
    "ssh_allowed_networks",
    "api_allowed_networks",
    "additional_packages",
    "post_create_commands",
    "default_nameservers",
    "cluster_autoscaler_args",
    "kube_api_server_args",
    "kube_scheduler_args",
    "kube_controller_manager_args",
    "kube_cloud_controller_manager_args",
    "kubelet_args",
    "kube_proxy_args",
)

_BOOL_KEYS = (
    "verify_host_key",
    "schedule_workloads_on_masters",
    "schedule_csi_controller_on_master",
    "enable_encryption",
    "fix_multipath",
    "hcloud_volume_is_default_storage_class",
)

_STR_KEYS = ("image", "existing_network", "network_ip_range")

_PATH_KEYS = ("kubeconfig_path", "public_ssh_key_path", "private_ssh_key_path")


def build_spec(raw: RawConfig, *, env: dict[str, str] | None = None) -> ClusterSpec:
    """Build a ClusterSpec from parsed TOML, applying defaults.

    Args:
        raw: Parsed configuration mapping.
        env: Environment used for ``HCLOUD_TOKEN`` (defaults to ``os.environ``).

    Returns:
        The (not yet validated) cluster spec.
    """
    env = os.environ if env is None else env
    masters_raw = raw.get("masters") or {}

    kwargs: dict[str, Any] = {
        "hetzner_token": env.get(TOKEN_ENV) or str(raw.get("hetzner_token", "")),
        "cluster_name": str(raw.get("cluster_name", "")),
        "k3s_version": str(raw.get("k3s_version", "")),
        "location": str(raw.get("location", "")),
        "masters": MasterPool(
            instance_type=str(masters_raw.get("instance_type", "")),
            instance_count=_integer(masters_raw, "instance_count", "masters"),
        ),
        "worker_node_pools": tuple(
            _build_worker_pool(p) for p in raw.get("worker_node_pools") or []
        ),
        "autoscaling_node_pools": tuple(
            _build_autoscaling_pool(p) for p in raw.get("autoscaling_node_pools") or []
        ),
    }

    for key in _LIST_KEYS:
        if (values := _strings(raw, key)) is not None:
            kwargs[key] = values
    for key in _BOOL_KEYS:
        if key in raw:
            kwargs[key] = bool(raw[key])
    for key in _STR_KEYS:
        if key in raw:
            kwargs[key] = str(raw[key])
    for key in _PATH_KEYS:
        if key in raw:
            kwargs[key] = resolve_path(str(raw[key]))

    return ClusterSpec(**kwargs)


def load_config(path: Path | None = None, *, validated: bool = True) -> ClusterSpec:
    """Load, default and validate the cluster configuration.

    Args:
        path: Explicit configuration file. Falls back to ``DEFAULT_CONFIG_PATHS``.
        validated: Run :func:`validate` on the result.

    Raises:
        ConfigurationError: If the file is missing, malformed or invalid.
    """
    spec = build_spec(_read_toml(_find_config(path)))
    return validate(spec) if validated else spec


# =============================================================================
# Validation
# =============================================================================


def _check_cidrs(key: str, cidrs: tuple[str, ...], problems: list[str]) -> None:
    if not cidrs:
        problems.append(f"{key} must contain at least one network")
    for cidr in cidrs:
        try:
            ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            problems.append(f"{key}: '{cidr}' is not a valid CIDR")


def _check_location(label: str, location: str, problems: list[str]) -> None:
    if location and location not in LOCATIONS:
        problems.append(f"{label}: location '{location}' must be one of {', '.join(LOCATIONS)}")


def validate(spec: ClusterSpec) -> ClusterSpec:
    """Check a ClusterSpec and report every problem at once.

    Raises:
        ConfigurationError: With one entry per problem found.
    """
    problems: list[str] = []

    if not spec.hetzner_token:
        problems.append(f"hetzner_token is required (or set {TOKEN_ENV})")
    if not _DNS_LABEL.match(spec.cluster_name):
        problems.append(
            f"cluster_name '{spec.cluster_name}' must be a lowercase DNS label "
            "(letters, digits and '-', starting with a letter)"
        )
    if not _K3S_VERSION.match(spec.k3s_version):
        problems.append(f"k3s_version '{spec.k3s_version}' must look like v1.26.4+k3s1")
    if not spec.location:
        problems.append("location is required")
    _check_location("location", spec.location, problems)

    _check_cidrs("ssh_allowed_networks", spec.ssh_allowed_networks, problems)
    _check_cidrs("api_allowed_networks", spec.api_allowed_networks, problems)
    _check_cidrs("network_ip_range", (spec.network_ip_range,), problems)

    if not spec.masters.instance_type:
        problems.append("masters.instance_type is required")
    if spec.masters.instance_count <= 0:
        problems.append("masters.instance_count must be greater than 0")

    names: set[str] = set()
    for i, pool in enumerate(spec.worker_node_pools):
        label = f"worker_node_pools[{i}]"
        if not pool.name:
            problems.append(f"{label}.name is required")
        elif pool.name in names:
            problems.append(f"{label}.name '{pool.name}' is used by another pool")
        names.add(pool.name)
        if not pool.instance_type:
            problems.append(f"{label}.instance_type is required")
        if pool.instance_count <= 0:
            problems.append(f"{label}.instance_count must be greater than 0")
        _check_location(label, pool.location, problems)

    for i, asg in enumerate(spec.autoscaling_node_pools):
        label = f"autoscaling_node_pools[{i}]"
        if not asg.name:
            problems.append(f"{label}.name is required")
        if not asg.instance_type:
            problems.append(f"{label}.instance_type is required")
        if asg.instance_min < 0:
            problems.append(f"{label}.instance_min must not be negative")
        if asg.instance_max <= 0:
            problems.append(f"{label}.instance_max must be greater than 0")
        elif asg.instance_max < asg.instance_min:
            problems.append(f"{label}.instance_max must be >= instance_min")
        _check_location(label, asg.location, problems)

    if problems:
        raise ConfigurationError("Invalid cluster configuration:", problems)
    return spec
