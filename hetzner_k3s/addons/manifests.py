"""Kubernetes manifests for the cluster addons."""

from __future__ import annotations

import json
import re

from hetzner_k3s.cluster.naming import autoscaling_prefix
from hetzner_k3s.config import ClusterSpec

CCM_URL = (
    "https://github.com/hetznercloud/hcloud-cloud-controller-manager/"
    "releases/latest/download/ccm-networks.yaml"
)
UPGRADE_CONTROLLER_URL = (
    "https://github.com/rancher/system-upgrade-controller/"
    "releases/download/v0.9.1/system-upgrade-controller.yaml"
)
CSI_URL = "https://raw.githubusercontent.com/hetznercloud/csi-driver/master/deploy/kubernetes/hcloud-csi.yml"
AUTOSCALER_IMAGE = "k8s.gcr.io/autoscaling/cluster-autoscaler:v1.23.0"

_DEFAULT_CLASS = re.compile(r"storageclass\.kubernetes\.io/is-default-class.*")


def secret(name: str, data: dict[str, str], namespace: str = "kube-system") -> str:
    lines = [
        'apiVersion: "v1"',
        'kind: "Secret"',
        "metadata:",
        f"  namespace: '{namespace}'",
        f"  name: '{name}'",
        "stringData:",
    ]
    lines.extend(f"  {key}: {json.dumps(value)}" for key, value in data.items())
    return "\n".join(lines) + "\n"


def ccm_secret(spec: ClusterSpec) -> str:
    return secret("hcloud", {"network": spec.network_name, "token": spec.hetzner_token})


def csi_secret(spec: ClusterSpec) -> str:
    return secret("hcloud-csi", {"token": spec.hetzner_token})


def autoscaler_secret(spec: ClusterSpec) -> str:
    return secret("hcloud-cluster-autoscaler", {"token": spec.hetzner_token})


def csi_driver_manifest(downloaded: str, *, default_storage_class: bool) -> str:
    if default_storage_class:
        return downloaded
    return _DEFAULT_CLASS.sub('storageclass.kubernetes.io/is-default-class: "false"', downloaded)


# fsGroupPolicy is immutable, so the driver object is deleted before re-applying.
CSI_DRIVER_OBJECT = """apiVersion: storage.k8s.io/v1
kind: CSIDriver
metadata:
  name: csi.hetzner.cloud
spec:
  attachRequired: true
  podInfoOnMount: true
  volumeLifecycleModes:
  - Persistent
  fsGroupPolicy: File
"""

CSI_CONTROLLER_ON_MASTER = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: hcloud-csi-controller
  namespace: kube-system
spec:
  replicas: 1
  selector:
    matchLabels:
      app: hcloud-csi-controller
  template:
    metadata:
      labels:
        app: hcloud-csi-controller
    spec:
      tolerations:
        - effect: NoSchedule
          key: node-role.kubernetes.io/master
        - key: "CriticalAddonsOnly"
          operator: "Equal"
          value: "true"
          effect: "NoExecute"
      affinity:
        nodeAffinity:
          requiredDuringSchedulingIgnoredDuringExecution:
            nodeSelectorTerms:
              - matchExpressions:
                  - key: node-role.kubernetes.io/master
                    operator: Exists
      containers:
      - image: k8s.gcr.io/sig-storage/csi-attacher:v3.2.1
        name: csi-attacher
        volumeMounts:
        - mountPath: /run/csi
          name: socket-dir
      - image: k8s.gcr.io/sig-storage/csi-resizer:v1.2.0
        name: csi-resizer
        volumeMounts:
        - mountPath: /run/csi
          name: socket-dir
      - args:
        - --feature-gates=Topology=true
        - --default-fstype=ext4
        image: k8s.gcr.io/sig-storage/csi-provisioner:v2.2.2
        name: csi-provisioner
        volumeMounts:
        - mountPath: /run/csi
          name: socket-dir
      - command:
        - /bin/hcloud-csi-driver-controller
        env:
        - name: CSI_ENDPOINT
          value: unix:///run/csi/socket
        - name: METRICS_ENDPOINT
          value: 0.0.0.0:9189
        - name: ENABLE_METRICS
          value: "true"
        - name: KUBE_NODE_NAME
          valueFrom:
            fieldRef:
              apiVersion: v1
              fieldPath: spec.nodeName
        - name: HCLOUD_TOKEN
          valueFrom:
            secretKeyRef:
              key: token
              name: hcloud
        image: hetznercloud/hcloud-csi-driver:latest
        imagePullPolicy: Always
        livenessProbe:
          failureThreshold: 5
          httpGet:
            path: /healthz
            port: healthz
          initialDelaySeconds: 10
          periodSeconds: 2
          timeoutSeconds: 3
        name: hcloud-csi-driver
        ports:
        - containerPort: 9189
          name: metrics
        - containerPort: 9808
          name: healthz
          protocol: TCP
        volumeMounts:
        - mountPath: /run/csi
          name: socket-dir
      - image: k8s.gcr.io/sig-storage/livenessprobe:v2.3.0
        imagePullPolicy: Always
        name: liveness-probe
        volumeMounts:
        - mountPath: /run/csi
          name: socket-dir
      serviceAccountName: hcloud-csi-controller
      volumes:
      - emptyDir: {}
        name: socket-dir
"""


# =============================================================================
# Cluster autoscaler
# =============================================================================


def autoscaler_args(spec: ClusterSpec) -> list[str]:
    args = list(spec.cluster_autoscaler_args)
    if not any("--stderrthreshold" in a for a in args):
        args.append("--stderrthreshold=info")
    return args


def node_pool_args(spec: ClusterSpec) -> list[str]:
    return [
        f"--nodes={pool.instance_min}:{pool.instance_max}:{pool.instance_type.upper()}:"
        f"{spec.pool_location(pool).upper()}:"
        f"{autoscaling_prefix(spec.cluster_name, pool.instance_type, pool.name)}"
        for pool in spec.autoscaling_node_pools
    ]


_AUTOSCALER_RBAC = """---
apiVersion: v1
kind: ServiceAccount
metadata:
  labels:
    k8s-addon: cluster-autoscaler.addons.k8s.io
    k8s-app: cluster-autoscaler
  name: cluster-autoscaler
  namespace: kube-system
---
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRole
metadata:
  name: cluster-autoscaler
  labels:
    k8s-addon: cluster-autoscaler.addons.k8s.io
    k8s-app: cluster-autoscaler
rules:
  - apiGroups: [""]
    resources: ["events", "endpoints"]
    verbs: ["create", "patch"]
  - apiGroups: [""]
    resources: ["pods/eviction"]
    verbs: ["create"]
  - apiGroups: [""]
    resources: ["pods/status"]
    verbs: ["update"]
  - apiGroups: [""]
    resources: ["endpoints"]
    resourceNames: ["cluster-autoscaler"]
    verbs: ["get", "update"]
  - apiGroups: [""]
    resources: ["nodes"]
    verbs: ["watch", "list", "get", "update"]
  - apiGroups: [""]
    resources:
      - "namespaces"
      - "pods"
      - "services"
      - "replicationcontrollers"
      - "persistentvolumeclaims"
      - "persistentvolumes"
    verbs: ["watch", "list", "get"]
  - apiGroups: ["extensions"]
    resources: ["replicasets", "daemonsets"]
    verbs: ["watch", "list", "get"]
  - apiGroups: ["policy"]
    resources: ["poddisruptionbudgets"]
    verbs: ["watch", "list"]
  - apiGroups: ["apps"]
    resources: ["statefulsets", "replicasets", "daemonsets"]
    verbs: ["watch", "list", "get"]
  - apiGroups: ["storage.k8s.io"]
    resources: ["storageclasses", "csinodes", "csistoragecapacities", "csidrivers"]
    verbs: ["watch", "list", "get"]
  - apiGroups: ["batch", "extensions"]
    resources: ["jobs"]
    verbs: ["get", "list", "watch", "patch"]
  - apiGroups: ["coordination.k8s.io"]
    resources: ["leases"]
    verbs: ["create"]
  - apiGroups: ["coordination.k8s.io"]
    resourceNames: ["cluster-autoscaler"]
    resources: ["leases"]
    verbs: ["get", "update"]
---
apiVersion: rbac.authorization.k8s.io/v1
kind: Role
metadata:
  name: cluster-autoscaler
  namespace: kube-system
  labels:
    k8s-addon: cluster-autoscaler.addons.k8s.io
    k8s-app: cluster-autoscaler
rules:
  - apiGroups: [""]
    resources: ["configmaps"]
    verbs: ["create","list","watch"]
  - apiGroups: [""]
    resources: ["configmaps"]
    resourceNames: ["cluster-autoscaler-status", "cluster-autoscaler-priority-expander"]
    verbs: ["delete", "get", "update", "watch"]
---
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRoleBinding
metadata:
  name: cluster-autoscaler
  labels:
    k8s-addon: cluster-autoscaler.addons.k8s.io
    k8s-app: cluster-autoscaler
roleRef:
  apiGroup: rbac.authorization.k8s.io
  kind: ClusterRole
  name: cluster-autoscaler
subjects:
  - kind: ServiceAccount
    name: cluster-autoscaler
    namespace: kube-system
---
apiVersion: rbac.authorization.k8s.io/v1
kind: RoleBinding
metadata:
  name: cluster-autoscaler
  namespace: kube-system
  labels:
    k8s-addon: cluster-autoscaler.addons.k8s.io
    k8s-app: cluster-autoscaler
roleRef:
  apiGroup: rbac.authorization.k8s.io
  kind: Role
  name: cluster-autoscaler
subjects:
  - kind: ServiceAccount
    name: cluster-autoscaler
    namespace: kube-system
"""


def autoscaler_manifest(
    spec: ClusterSpec,
    *,
    cloud_init: str,
    ssh_key: str,
    network: str,
    firewall: str,
) -> str:
    """RBAC plus a Deployment pinned to the masters.

    Args:
        cloud_init: Base64 user data for nodes the autoscaler creates.
        ssh_key: Name of the cluster SSH key.
        network: Name of the private network.
        firewall: Name of the cluster firewall.
    """
    command = ["./cluster-autoscaler", "--cloud-provider=hetzner", *autoscaler_args(spec), *node_pool_args(spec)]
    command_lines = "\n".join(f"            - {c}" for c in command)
    env = {
        "HCLOUD_CLOUD_INIT": cloud_init,
        "HCLOUD_IMAGE": spec.image,
        "HCLOUD_FIREWALL": firewall,
        "HCLOUD_SSH_KEY": ssh_key,
        "HCLOUD_NETWORK": network,
    }
    env_lines = "\n".join(
        f"          - name: {name}\n            value: {json.dumps(value)}" for name, value in env.items()
    )
    deployment = f"""---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: cluster-autoscaler
  namespace: kube-system
  labels:
    app: cluster-autoscaler
spec:
  replicas: 1
  selector:
    matchLabels:
      app: cluster-autoscaler
  template:
    metadata:
      labels:
        app: cluster-autoscaler
      annotations:
        prometheus.io/scrape: 'true'
        prometheus.io/port: '8085'
    spec:
      serviceAccountName: cluster-autoscaler
      tolerations:
        - effect: NoSchedule
          key: node-role.kubernetes.io/master
        - key: "CriticalAddonsOnly"
          operator: "Equal"
          value: "true"
          effect: "NoExecute"
      # pinned to masters so the cluster can scale workers down to zero
      affinity:
        nodeAffinity:
          requiredDuringSchedulingIgnoredDuringExecution:
            nodeSelectorTerms:
              - matchExpressions:
                  - key: node-role.kubernetes.io/master
                    operator: Exists
      containers:
        - image: {AUTOSCALER_IMAGE}
          name: cluster-autoscaler
          resources:
            limits:
              cpu: 100m
              memory: 300Mi
            requests:
              cpu: 100m
              memory: 300Mi
          command:
{command_lines}
          env:
          - name: HCLOUD_TOKEN
            valueFrom:
              secretKeyRef:
                name: hcloud-cluster-autoscaler
                key: token
{env_lines}
          volumeMounts:
            - name: ssl-certs
              mountPath: /etc/ssl/certs/ca-certificates.crt
              readOnly: true
          imagePullPolicy: "Always"
      volumes:
        - name: ssl-certs
          hostPath:
            path: "/etc/ssl/certs/ca-certificates.crt"
"""
    return _AUTOSCALER_RBAC + deployment
