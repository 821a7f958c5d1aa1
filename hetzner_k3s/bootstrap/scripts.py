"""Payload text handed to servers and to kubectl.

Pure functions only: cloud-init user data, the k3s install commands for
masters and workers, and the system-upgrade-controller plans.
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Iterable

from hetzner_k3s.config import ClusterSpec
from hetzner_k3s.releases import supports_wireguard_native

API_PORT = 6443
CLUSTER_CIDR = "10.244.0.0/16"
INSTALL_URL = "https://get.k3s.io"
UPGRADE_IMAGE = "rancher/k3s-upgrade"

READY_MARKER = "/etc/ready"
READY_COMMAND = f"cat {READY_MARKER}"
READY_VALUE = "true"

TOKEN_PATH = "/var/lib/rancher/k3s/server/node-token"
TOKEN_COMMAND = f"{{ TOKEN=$(< {TOKEN_PATH}); }} 2> /dev/null; echo $TOKEN"
KUBECONFIG_COMMAND = "cat /etc/rancher/k3s/k3s.yaml"

REBOOT_COMMAND = "shutdown -r now"
_REBOOTS = re.compile(r"shutdown|[^@]reboot")

_FLANNEL_INTERFACE = (
    "if lscpu | grep Vendor | grep -q Intel; "
    "then export FLANNEL_INTERFACE=ens10 ; "
    "else export FLANNEL_INTERFACE=enp7s0 ; fi"
)

_MULTIPATH_FIX = (
    "if ! grep -q blacklist /etc/multipath.conf; then "
    "printf 'blacklist {\\n    devnode \"^sd[a-z0-9]+\"\\n}' >> /etc/multipath.conf; fi",
    "systemctl restart multipathd.service",
)


# =============================================================================
# Cloud-init
# =============================================================================


def _first_boot_commands(spec: ClusterSpec) -> list[str]:
    commands = [
        "crontab -l > /etc/cron_bkp",
        f"echo '@reboot echo {READY_VALUE} > {READY_MARKER}' >> /etc/cron_bkp",
        "crontab /etc/cron_bkp",
        "sed -i 's/[#]*PermitRootLogin yes/PermitRootLogin prohibit-password/g' /etc/ssh/sshd_config",
        "sed -i 's/[#]*PasswordAuthentication yes/PasswordAuthentication no/g' /etc/ssh/sshd_config",
        "systemctl restart sshd",
        "systemctl stop systemd-resolved",
        "systemctl disable systemd-resolved",
        "rm -f /etc/resolv.conf",
    ]
    for i, nameserver in enumerate(spec.default_nameservers):
        redirect = ">" if i == 0 else ">>"
        commands.append(f"echo 'nameserver {nameserver}' {redirect} /etc/resolv.conf")
    commands.extend(spec.post_create_commands)
    if spec.fix_multipath:
        commands.extend(_MULTIPATH_FIX)
    return commands


def _render_cloud_config(packages: Iterable[str], commands: Iterable[str]) -> str:
    lines = ["#cloud-config", "packages:"]
    lines.extend(f"  - {json.dumps(p)}" for p in packages)
    lines.append("runcmd:")
    lines.extend(f"  - {json.dumps(c)}" for c in commands)
    return "\n".join(lines) + "\n"


def cloud_init(spec: ClusterSpec, *, extra_commands: Iterable[str] = ()) -> str:
    """Cloud-init user data for every server.

    First boot installs a cron entry that writes the readiness marker on
    every boot, hardens sshd and pins the nameservers. A final reboot is
    appended unless one of the commands already reboots.
    """
    packages = ["fail2ban", "wireguard", *spec.additional_packages]
    commands = [*_first_boot_commands(spec), *extra_commands]
    if not _REBOOTS.search(" ".join(commands)):
        commands.append(REBOOT_COMMAND)
    return _render_cloud_config(packages, commands)


# =============================================================================
# k3s install
# =============================================================================


def flannel_backend(version: str, encryption: bool) -> str:
    if not encryption:
        return ""
    if supports_wireguard_native(version):
        return "--flannel-backend=wireguard-native"
    return "--flannel-backend=wireguard"


def extra_args(spec: ClusterSpec) -> str:
    """Operator-supplied flags for each control-plane component."""
    groups = (
        ("kube-apiserver-arg", spec.kube_api_server_args),
        ("kube-scheduler-arg", spec.kube_scheduler_args),
        ("kube-controller-manager-arg", spec.kube_controller_manager_args),
        ("kube-cloud-controller-manager-arg", spec.kube_cloud_controller_manager_args),
        ("kubelet-arg", spec.kubelet_args),
        ("kube-proxy-arg", spec.kube_proxy_args),
    )
    return " ".join(f'--{flag}="{value}"' for flag, values in groups for value in values)


def tls_sans(api_address: str, master_private_ips: Iterable[str]) -> str:
    return " ".join(f"--tls-san={ip}" for ip in [api_address, *master_private_ips])


def master_script(
    spec: ClusterSpec,
    *,
    token: str,
    api_address: str,
    master_private_ips: list[str],
    first: bool,
) -> str:
    """k3s server install command for one master.

    The first master initializes the embedded etcd cluster; the others join
    it through ``api_address``.
    """
    server = "--cluster-init" if first else f"--server https://{api_address}:{API_PORT}"
    taint = "" if spec.schedule_workloads_on_masters else "--node-taint CriticalAddonsOnly=true:NoExecute"
    flags = [
        "server",
        "--disable-cloud-controller",
        "--disable servicelb",
        "--disable traefik",
        "--disable local-storage",
        "--disable metrics-server",
        "--write-kubeconfig-mode=644",
        '--node-name="$(hostname -f)"',
        f"--cluster-cidr={CLUSTER_CIDR}",
        "--etcd-expose-metrics=true",
        flannel_backend(spec.k3s_version, spec.enable_encryption),
        '--kube-controller-manager-arg="bind-address=0.0.0.0"',
        '--kube-proxy-arg="metrics-bind-address=0.0.0.0"',
        '--kube-scheduler-arg="bind-address=0.0.0.0"',
        taint,
        extra_args(spec),
        '--kubelet-arg="cloud-provider=external"',
        "--advertise-address=$(hostname -I | awk '{print $2}')",
        "--node-ip=$(hostname -I | awk '{print $2}')",
        "--node-external-ip=$(hostname -I | awk '{print $1}')",
        "--flannel-iface=$FLANNEL_INTERFACE",
        server,
        tls_sans(api_address, master_private_ips),
    ]
    exec_args = " \\\n".join(f for f in flags if f)
    return (
        f"{_FLANNEL_INTERFACE} && \\\n"
        f'curl -sfL {INSTALL_URL} | INSTALL_K3S_VERSION="{spec.k3s_version}" '
        f'K3S_TOKEN="{token}" INSTALL_K3S_EXEC="{exec_args}" sh -'
    )


def worker_script(spec: ClusterSpec, *, token: str, first_master_private_ip: str) -> str:
    flags = [
        "agent",
        '--node-name="$(hostname -f)"',
        '--kubelet-arg="cloud-provider=external"',
        "--node-ip=$(hostname -I | awk '{print $2}')",
        "--node-external-ip=$(hostname -I | awk '{print $1}')",
        "--flannel-iface=$FLANNEL_INTERFACE",
    ]
    exec_args = " \\\n".join(flags)
    return (
        f"{_FLANNEL_INTERFACE} && \\\n"
        f'curl -sfL {INSTALL_URL} | K3S_TOKEN="{token}" INSTALL_K3S_VERSION="{spec.k3s_version}" '
        f'K3S_URL=https://{first_master_private_ip}:{API_PORT} INSTALL_K3S_EXEC="{exec_args}" sh -'
    )


def autoscaler_cloud_init(spec: ClusterSpec, *, token: str, first_master_private_ip: str) -> str:
    """Base64 cloud-init for autoscaled nodes: the usual first boot, then join."""
    join = worker_script(spec, token=token, first_master_private_ip=first_master_private_ip)
    commands = [c for c in _first_boot_commands(spec) if c != REBOOT_COMMAND]
    document = _render_cloud_config(
        ["fail2ban", "wireguard", *spec.additional_packages],
        [*commands, join, REBOOT_COMMAND],
    )
    return base64.b64encode(document.encode()).decode()


# =============================================================================
# Token and kubeconfig
# =============================================================================


def parse_token(output: str) -> str | None:
    """Join token from the node-token file contents.

    The file holds ``K10<ca-hash>::server:<secret>``; only the part after
    the last ``:`` is needed. Empty output means the cluster is new.
    """
    text = output.strip()
    if not text:
        return None
    return text.split(":")[-1]


def rewrite_kubeconfig(raw: str, *, api_address: str, cluster_name: str) -> str:
    return raw.replace("127.0.0.1", api_address).replace("default", cluster_name)


# =============================================================================
# Upgrade plans
# =============================================================================


def server_upgrade_plan(version: str) -> str:
    return f"""apiVersion: upgrade.cattle.io/v1
kind: Plan
metadata:
  name: k3s-server
  namespace: system-upgrade
  labels:
    k3s-upgrade: server
spec:
  concurrency: 1
  version: {version}
  nodeSelector:
    matchExpressions:
      - {{key: node-role.kubernetes.io/master, operator: In, values: ["true"]}}
  serviceAccountName: system-upgrade
  tolerations:
  - key: "CriticalAddonsOnly"
    operator: "Equal"
    value: "true"
    effect: "NoExecute"
  cordon: true
  upgrade:
    image: {UPGRADE_IMAGE}
"""


def agent_upgrade_concurrency(worker_count: int) -> int:
    return max(worker_count - 1, 1)


def agent_upgrade_plan(version: str, concurrency: int) -> str:
    return f"""apiVersion: upgrade.cattle.io/v1
kind: Plan
metadata:
  name: k3s-agent
  namespace: system-upgrade
  labels:
    k3s-upgrade: agent
spec:
  concurrency: {concurrency}
  version: {version}
  nodeSelector:
    matchExpressions:
      - {{key: node-role.kubernetes.io/master, operator: NotIn, values: ["true"]}}
  serviceAccountName: system-upgrade
  prepare:
    image: {UPGRADE_IMAGE}
    args: ["prepare", "k3s-server"]
  cordon: true
  upgrade:
    image: {UPGRADE_IMAGE}
"""
