"""
Fleet profile catalog and profile assignment.

Profiles partition the fleet index space in declaration order: with the
standard catalog, indices 0-14 are web servers, 15-24 app servers, and so on.
"""

import random
from typing import Literal

from fleetsim.domain.health import clamp_metric
from fleetsim.domain.models import MetricBaseline, ServerProfile

ProfileCatalogName = Literal["standard", "kubernetes"]


def _baseline(base: float, variation: float) -> MetricBaseline:
    return MetricBaseline(base=base, variation=variation)


STANDARD_PROFILES: tuple[ServerProfile, ...] = (
    ServerProfile(
        role="web",
        count=15,
        cpu=_baseline(40, 15),
        memory=_baseline(50, 15),
        disk=_baseline(45, 10),
        services=("nginx", "php-fpm", "varnish", "haproxy"),
        min_services=2,
        max_services=4,
        traffic_multiplier=2.0,
    ),
    ServerProfile(
        role="app",
        count=10,
        cpu=_baseline(55, 20),
        memory=_baseline(60, 15),
        disk=_baseline(40, 10),
        services=("tomcat", "nodejs", "pm2", "supervisord", "docker"),
        min_services=2,
        max_services=5,
    ),
    ServerProfile(
        role="db",
        count=8,
        cpu=_baseline(45, 15),
        memory=_baseline(70, 15),
        disk=_baseline(65, 15),
        services=("mysql", "postgresql", "mongodb", "redis", "elasticsearch"),
        min_services=1,
        max_services=3,
    ),
    ServerProfile(
        role="cache",
        count=5,
        cpu=_baseline(30, 20),
        memory=_baseline(80, 15),
        disk=_baseline(25, 10),
        services=("redis", "memcached", "varnish"),
        min_services=1,
        max_services=2,
    ),
    ServerProfile(
        role="api",
        count=7,
        cpu=_baseline(50, 20),
        memory=_baseline(55, 15),
        disk=_baseline(35, 10),
        services=("nginx", "nodejs", "python", "gunicorn", "uwsgi"),
        min_services=2,
        max_services=4,
        traffic_multiplier=2.0,
    ),
    ServerProfile(
        role="monitor",
        count=5,
        cpu=_baseline(35, 10),
        memory=_baseline(50, 10),
        disk=_baseline(60, 15),
        services=("prometheus", "grafana", "influxdb", "telegraf", "alertmanager"),
        min_services=2,
        max_services=5,
    ),
)

KUBERNETES_PROFILES: tuple[ServerProfile, ...] = (
    ServerProfile(
        role="k8s-master",
        count=3,
        cpu=_baseline(35, 15),
        memory=_baseline(45, 15),
        disk=_baseline(55, 15),
        services=("kube-apiserver", "kube-scheduler", "kube-controller-manager", "etcd-client"),
        min_services=3,
        max_services=4,
    ),
    ServerProfile(
        role="k8s-worker",
        count=10,
        cpu=_baseline(50, 20),
        memory=_baseline(57, 17),
        disk=_baseline(65, 15),
        services=("kubelet", "kube-proxy", "container-runtime", "node-problem-detector"),
        min_services=3,
        max_services=4,
        traffic_multiplier=1.5,
    ),
    ServerProfile(
        role="k8s-etcd",
        count=2,
        cpu=_baseline(25, 15),
        memory=_baseline(45, 15),
        disk=_baseline(50, 10),
        services=("etcd", "etcd-backup"),
        min_services=1,
        max_services=2,
    ),
)


def get_profile_catalog(name: ProfileCatalogName) -> tuple[ServerProfile, ...]:
    """Look up a profile catalog by name."""
    if name == "standard":
        return STANDARD_PROFILES
    elif name == "kubernetes":
        return KUBERNETES_PROFILES
    else:
        raise ValueError(f"Unknown profile catalog: {name}")


def catalog_size(profiles: tuple[ServerProfile, ...]) -> int:
    return sum(p.count for p in profiles)


def select_profile(index: int, profiles: tuple[ServerProfile, ...]) -> ServerProfile:
    """
    Pick the profile whose cumulative count range contains index.

    Indices past the end of the catalog fall back to the first profile.
    """
    if not profiles:
        raise ValueError("Profile catalog is empty")

    cumulative = 0
    for profile in profiles:
        cumulative += profile.count
        if index < cumulative:
            return profile
    return profiles[0]


def find_profile(role: str, profiles: tuple[ServerProfile, ...]) -> ServerProfile:
    """Find a profile by role, falling back to the first profile."""
    return next((p for p in profiles if p.role == role), profiles[0])


def draw_baseline(baseline: MetricBaseline, rng: random.Random) -> float:
    """Draw base +/- uniform(variation), clamped to the metric range."""
    return clamp_metric(baseline.base + rng.uniform(-baseline.variation, baseline.variation))
