#!/usr/bin/env python3
"""
Cluster health aggregation.

Pings /_health/ping on every internal URL of every service that has a health
endpoint and reports one OK/ERROR entry per URL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from .config import Cluster
from .config_constants import HEALTH_CHECK_SERVICES, HEALTH_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass
class ClusterHealth:
    health: str = "OK"
    # "<service>+<internal url>" -> "OK" | "ERROR"
    checks: dict[str, str] = field(default_factory=dict)


class HealthAggregator:
    def __init__(self, cluster: Cluster, session: Optional[requests.Session] = None) -> None:
        self.cluster = cluster
        self.session = session or requests.Session()

    def targets(self) -> list[tuple[str, str]]:
        """(service, internal url) pairs to ping."""
        targets = []
        for name in HEALTH_CHECK_SERVICES:
            for url in sorted(self.cluster.services.get(name).internal_urls):
                targets.append((name, url))
        return targets

    def ping(self, url: str) -> str:
        ping_url = url.rstrip('/') + '/_health/ping'
        try:
            response = self.session.get(
                ping_url,
                headers={'Authorization': f'Bearer {self.cluster.management_token}'},
                timeout=HEALTH_REQUEST_TIMEOUT,
                verify=not self.cluster.tls.insecure,
            )
            if response.status_code != 200:
                logger.debug(f"  {ping_url}: HTTP {response.status_code}")
                return "ERROR"
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"  {ping_url}: {e}")
            return "ERROR"
        if isinstance(data, dict) and data.get('health') == 'OK':
            return "OK"
        return "ERROR"

    def cluster_health(self) -> ClusterHealth:
        result = ClusterHealth()
        for name, url in self.targets():
            status = self.ping(url)
            result.checks[f"{name}+{url}"] = status
            if status != "OK":
                result.health = "ERROR"
        return result
