#!/usr/bin/env python3
"""
Helpers for the kubeconfig blobs carried by ClusterRegistrations and
credential secrets.
"""

import base64
import binascii
import re
from typing import Dict
from urllib.parse import urlparse

import yaml

from errors import DecodeError

_ENDPOINT_PATTERN = re.compile(r"https://[0-9a-zA-Z./-]+")

# 32-bit FNV-1a
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def decode_kubeconfig(encoded: str) -> bytes:
    """Strictly decode the base64 kubeconfig from a registration spec"""
    if not encoded:
        raise DecodeError("kubeConfig is empty")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"kubeConfig is not valid base64: {e}") from e


def load_kubeconfig(raw: bytes) -> Dict:
    """Parse a kubeconfig document into a dict"""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise DecodeError(f"kubeconfig is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError("kubeconfig is not a mapping")
    return data


def server_uri(kubeconfig: Dict) -> str:
    """
    Resolve the API server URI of the cluster referenced by the current
    context.
    """
    current = kubeconfig.get("current-context")
    if not current:
        raise DecodeError("kubeconfig has no current-context")

    contexts = {c.get("name"): c.get("context") or {} for c in kubeconfig.get("contexts") or []}
    if current not in contexts:
        raise DecodeError(f"context {current} not found in kubeconfig")
    cluster_name = contexts[current].get("cluster")

    clusters = {c.get("name"): c.get("cluster") or {} for c in kubeconfig.get("clusters") or []}
    if cluster_name not in clusters:
        raise DecodeError(f"cluster {cluster_name} not found in kubeconfig")

    server = clusters[cluster_name].get("server")
    if not server:
        raise DecodeError(f"cluster {cluster_name} has no server")
    return server


def server_uri_from_bytes(raw: bytes) -> str:
    return server_uri(load_kubeconfig(raw))


def apiserver_endpoint(server: str) -> str:
    """
    Endpoint recorded on ClusterManager annotations: the https URI without
    its scheme, cut at the first character outside [0-9a-zA-Z./-] (so the
    port is dropped).
    """
    match = _ENDPOINT_PATTERN.match(server)
    if not match:
        raise DecodeError(f"server {server} is not an https endpoint")
    return match.group(0)[len("https://"):]


def _fnv32a(data: bytes) -> int:
    h = _FNV_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def uri_to_secret_name(uri_type: str, uri: str) -> str:
    """
    Deterministic Argo CD secret name for a server URI:
    ``<type>-<lowercased host>-<fnv32a of the full uri>``.
    """
    parsed = urlparse(uri)
    if not parsed.scheme or not parsed.netloc:
        raise DecodeError(f"cannot parse server uri {uri}")
    host = parsed.netloc.split(":")[0].lower()
    return f"{uri_type}-{host}-{_fnv32a(uri.encode('utf-8'))}"
