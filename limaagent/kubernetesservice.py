"""Ports exposed by NodePort and LoadBalancer services of a local Kubernetes."""

from __future__ import annotations

import base64
import ipaddress
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import yaml

from limaagent.api import IPAddress

log = logging.getLogger(__name__)

RETRY_INTERVAL = 10.0
_CANDIDATE_KUBECONFIGS = ["/etc/rancher/k3s/k3s.yaml", "/root/.kube/config"]


class Protocol(str, Enum):
    TCP = "TCP"


@dataclass(frozen=True)
class Entry:
    protocol: Protocol
    ip: IPAddress
    port: int


class KubeClient:
    """A minimal client for listing services."""

    def __init__(self, host: str, http: httpx.Client) -> None:
        self.host = host
        self.http = http

    def list_services(self) -> list[dict[str, Any]]:
        response = self.http.get("/api/v1/services")
        response.raise_for_status()
        return list(response.json().get("items") or [])


def _data_file(data: str) -> str:
    fd, path = tempfile.mkstemp(prefix="kube-")
    with os.fdopen(fd, "wb") as stream:
        stream.write(base64.b64decode(data))
    return path


def _build_client(config: dict[str, Any]) -> KubeClient:
    contexts = {c["name"]: c.get("context", {}) for c in config.get("contexts") or []}
    clusters = {c["name"]: c.get("cluster", {}) for c in config.get("clusters") or []}
    users = {u["name"]: u.get("user", {}) for u in config.get("users") or []}
    ctx = contexts.get(config.get("current-context"), {})
    if not ctx and contexts:
        ctx = next(iter(contexts.values()))
    cluster = clusters.get(ctx.get("cluster")) or (next(iter(clusters.values())) if clusters else {})
    user = users.get(ctx.get("user")) or {}
    host = cluster.get("server")
    if not host:
        raise ValueError("no server in kubeconfig")

    verify: Any = not cluster.get("insecure-skip-tls-verify", False)
    if cluster.get("certificate-authority-data"):
        verify = _data_file(cluster["certificate-authority-data"])
    elif cluster.get("certificate-authority"):
        verify = cluster["certificate-authority"]
    cert = None
    if user.get("client-certificate-data") and user.get("client-key-data"):
        cert = (_data_file(user["client-certificate-data"]), _data_file(user["client-key-data"]))
    elif user.get("client-certificate") and user.get("client-key"):
        cert = (user["client-certificate"], user["client-key"])
    headers = {}
    if user.get("token"):
        headers["Authorization"] = f"Bearer {user['token']}"
    http = httpx.Client(base_url=host, verify=verify, cert=cert, headers=headers, timeout=30.0)
    return KubeClient(host, http)


def try_get_kube_client() -> KubeClient:
    """Build a client from the first kubeconfig that points at 127.0.0.1."""
    for path in _CANDIDATE_KUBECONFIGS:
        try:
            with open(path, encoding="utf-8") as stream:
                config = yaml.safe_load(stream) or {}
        except FileNotFoundError:
            continue
        except (OSError, yaml.YAMLError) as err:
            raise RuntimeError(f"build kubeconfig from {path} failed: {err}") from err
        try:
            client = _build_client(config)
        except (ValueError, KeyError, TypeError) as err:
            raise RuntimeError(f"build kubeconfig from {path} failed: {err}") from err
        if urlparse(client.host).hostname != "127.0.0.1":
            client.http.close()
            continue
        return client
    raise RuntimeError("no valid kubeconfig found")


class ServiceWatcher:
    """Keeps the latest list of services and reports their forwardable ports."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: Optional[list[dict[str, Any]]] = None

    def set_services(self, services: list[dict[str, Any]]) -> None:
        with self._lock:
            self._services = list(services)

    def start(self, stop: threading.Event) -> None:
        """Find a kube client, then keep the service list fresh until stopped."""
        client: Optional[KubeClient] = None
        while not stop.wait(RETRY_INTERVAL):
            if client is None:
                try:
                    client = try_get_kube_client()
                except RuntimeError as err:
                    log.debug("failed to get kube client: %s, will retry in %ss", err, RETRY_INTERVAL)
                    continue
            try:
                self.set_services(client.list_services())
            except httpx.HTTPError as err:
                log.debug("failed to list services: %s", err)
        if client is not None:
            client.http.close()

    def get_ports(self) -> list[Entry]:
        with self._lock:
            services = list(self._services or [])
        entries: list[Entry] = []
        for service in services:
            spec = service.get("spec") or {}
            kind = spec.get("type")
            if kind not in ("NodePort", "LoadBalancer"):
                continue
            for port in spec.get("ports") or []:
                if port.get("protocol", "TCP") != "TCP":
                    continue
                number = port.get("nodePort", 0) if kind == "NodePort" else port.get("port", 0)
                entries.append(Entry(Protocol.TCP, ipaddress.IPv4Address("0.0.0.0"),
                                     int(number or 0) & 0xFFFF))
        return entries