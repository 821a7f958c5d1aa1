"""Hetzner Cloud API response types.

TypedDicts for API responses - no conversion needed.
"""

from __future__ import annotations

from typing import Literal, NotRequired, TypedDict


class Subnet(TypedDict):
    type: str
    ip_range: str
    network_zone: str
    gateway: NotRequired[str]


class NetworkResponse(TypedDict):
    id: int
    name: str
    ip_range: str
    subnets: list[Subnet]
    labels: NotRequired[dict[str, str]]


class FirewallRule(TypedDict):
    direction: Literal["in", "out"]
    protocol: Literal["tcp", "udp", "icmp", "esp", "gre"]
    source_ips: list[str]
    port: NotRequired[str]
    description: NotRequired[str]


class FirewallResponse(TypedDict):
    id: int
    name: str
    rules: list[FirewallRule]


class SSHKeyResponse(TypedDict):
    id: int
    name: str
    fingerprint: str
    public_key: str


class PlacementGroupResponse(TypedDict):
    id: int
    name: str
    type: str
    servers: list[int]


class IPv4(TypedDict):
    ip: str


class PublicNet(TypedDict):
    ipv4: IPv4 | None


class PrivateNet(TypedDict):
    network: int
    ip: str


class ServerTypeRef(TypedDict):
    name: str


class ServerResponse(TypedDict):
    """Server as returned by ``/servers``."""

    id: int
    name: str
    status: str
    public_net: PublicNet
    private_net: list[PrivateNet]
    server_type: ServerTypeRef
    labels: dict[str, str]


class LabelSelector(TypedDict):
    selector: str


class LoadBalancerTarget(TypedDict):
    type: str
    label_selector: NotRequired[LabelSelector]
    use_private_ip: NotRequired[bool]


class LoadBalancerResponse(TypedDict):
    id: int
    name: str
    public_net: PublicNet
    targets: list[LoadBalancerTarget]


class LocationResponse(TypedDict):
    id: int
    name: str
    network_zone: str
