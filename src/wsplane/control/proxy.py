"""Proxy / routing synthesizer.

One shared nginx Deployment + Service per namespace fronts every workspace
in it. Routing is never edited in place: the route-membership ConfigMap
(workspace cluster name -> path prefix) is the only input, and the nginx
config plus the aggregate Traefik IngressRoute are re-rendered from it in
full on every change.

Writers are serialized per namespace by an in-process lock. Across
processes the membership ConfigMap is updated with resourceVersion
compare-and-swap, and rebuild re-renders until membership stops moving.
"""

import hashlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from wsplane.app.config import ProxyConfig, RuntimeConfig
from wsplane.app.metrics.collector import ROUTE_CAS_CONFLICTS_TOTAL, ROUTE_REBUILDS_TOTAL
from wsplane.control.locks import KeyedLock
from wsplane.core.domain.naming import route_prefix
from wsplane.core.errors import InfrastructureError, VersionConflictError
from wsplane.core.interfaces import ClusterClient, DeploymentSpec, ServiceSpec
from wsplane.core.logging_schema import Component, LogEvent
from wsplane.core.retryable import with_retry

logger = logging.getLogger(__name__)

NGINX_CONFIG_KEY = "default.conf"


# =============================================================================
# Rendering (pure)
# =============================================================================


def render_nginx_config(routes: Mapping[str, str], namespace: str, upstream_port: int) -> str:
    """Render the shared proxy config for a membership set.

    Output depends only on the arguments; entries are sorted by prefix.
    """
    lines = [
        "server {",
        "    listen 80;",
        "    location = /healthz {",
        "        return 200 'ok';",
        "    }",
    ]
    for name, prefix in sorted(routes.items(), key=lambda item: item[1]):
        lines += [
            f"    location {prefix}/ {{",
            f"        proxy_pass http://{name}.{namespace}.svc.cluster.local:{upstream_port}/;",
            "        proxy_http_version 1.1;",
            "        proxy_set_header Upgrade $http_upgrade;",
            '        proxy_set_header Connection "upgrade";',
            "        proxy_set_header Host $host;",
            "        proxy_set_header X-Forwarded-Prefix " + prefix + ";",
            "        proxy_read_timeout 86400s;",
            "    }",
        ]
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_ingress_route(
    routes: Mapping[str, str],
    *,
    name: str,
    namespace: str,
    host: str,
    entrypoint: str,
    service_name: str,
    service_port: int,
    api_version: str,
    labels: Mapping[str, str],
) -> dict:
    """Render the aggregate IngressRoute covering every prefix in routes."""
    return {
        "apiVersion": api_version,
        "kind": "IngressRoute",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
        "spec": {
            "entryPoints": [entrypoint],
            "routes": [
                {
                    "match": f"Host(`{host}`) && PathPrefix(`{prefix}`)",
                    "kind": "Rule",
                    "services": [{"name": service_name, "port": service_port}],
                }
                for prefix in sorted(routes.values())
            ],
        },
    }


def config_hash(config: str) -> str:
    return hashlib.sha256(config.encode()).hexdigest()[:16]


@dataclass
class StackState:
    """Objects of the shared proxy stack created by one ensure_stack call."""

    created: set[str] = field(default_factory=set)


# =============================================================================
# Synthesizer
# =============================================================================


class ProxySynthesizer:
    """Maintains the shared proxy stack and aggregate route per namespace."""

    def __init__(
        self,
        cluster: ClusterClient,
        proxy_cfg: ProxyConfig,
        runtime_cfg: RuntimeConfig,
        managed_by: str,
    ) -> None:
        self._cluster = cluster
        self._cfg = proxy_cfg
        self._runtime = runtime_cfg
        self._labels = {"app.kubernetes.io/managed-by": managed_by}
        self._locks = KeyedLock()

    def render(self, namespace: str, routes: Mapping[str, str]) -> tuple[str, dict]:
        """Render (nginx config, IngressRoute body) for a membership set."""
        cfg = self._cfg
        nginx = render_nginx_config(routes, namespace, self._runtime.service_port)
        route = render_ingress_route(
            routes,
            name=cfg.ingress_route_name,
            namespace=namespace,
            host=self._runtime.base_domain,
            entrypoint=cfg.entrypoint,
            service_name=cfg.service_name,
            service_port=cfg.port,
            api_version=f"{cfg.crd_group}/{cfg.crd_version}",
            labels=self._labels,
        )
        return nginx, route

    async def routes(self, namespace: str) -> dict[str, str]:
        current = await self._cluster.read_config_map(namespace, self._cfg.routes_config_map_name)
        return dict(current.data) if current else {}

    # =========================================================================
    # Stack
    # =========================================================================

    async def ensure_stack(self, namespace: str, state: StackState | None = None) -> StackState:
        """Create the proxy config, Deployment and Service if absent.

        Objects created by this call are recorded in state as they are
        created, so a caller can undo a partially built stack.
        """
        state = state if state is not None else StackState()
        cfg = self._cfg
        async with self._locks.hold(namespace):
            nginx, _ = self.render(namespace, await self.routes(namespace))

            if await self._cluster.create_config_map(
                namespace, cfg.config_map_name, {NGINX_CONFIG_KEY: nginx}, self._labels
            ):
                state.created.add("config")

            if await self._cluster.create_deployment(
                DeploymentSpec(
                    namespace=namespace,
                    name=cfg.deployment_name,
                    image=cfg.image,
                    container_port=cfg.port,
                    replicas=1,
                    cpu=cfg.cpu,
                    memory=cfg.memory,
                    labels=self._labels,
                    config_map=cfg.config_map_name,
                    pod_annotations={cfg.config_hash_annotation: config_hash(nginx)},
                )
            ):
                state.created.add("deployment")

            if await self._cluster.create_service(
                ServiceSpec(
                    namespace=namespace,
                    name=cfg.service_name,
                    selector={"app": cfg.deployment_name},
                    port=cfg.port,
                    target_port=cfg.port,
                    labels=self._labels,
                )
            ):
                state.created.add("service")

        if state.created:
            logger.info(
                "Proxy stack created in %s",
                namespace,
                extra={
                    "component": Component.PX,
                    "namespace": namespace,
                    "created": sorted(state.created),
                },
            )
        return state

    async def delete_stack(self, namespace: str) -> None:
        """Delete the aggregate route and the proxy stack.

        The route-membership ConfigMap is left alone; it may hold entries
        of other workspaces.
        """
        cfg = self._cfg
        async with self._locks.hold(namespace):
            await self._cluster.delete_ingress_route(namespace, cfg.ingress_route_name)
            await self._cluster.delete_service(namespace, cfg.service_name)
            await self._cluster.delete_deployment(namespace, cfg.deployment_name)
            await self._cluster.delete_config_map(namespace, cfg.config_map_name)

    # =========================================================================
    # Membership
    # =========================================================================

    async def register(self, namespace: str, name: str) -> dict[str, str]:
        """Add name -> /name to the membership set and rebuild."""
        prefix = route_prefix(name)
        async with self._locks.hold(namespace):
            await self._update_membership(namespace, lambda routes: {**routes, name: prefix})
            routes = await self._rebuild_locked(namespace)
        logger.info(
            "Route %s registered",
            prefix,
            extra={
                "event": LogEvent.ROUTE_REGISTERED,
                "component": Component.PX,
                "namespace": namespace,
                "workload": name,
            },
        )
        return routes

    async def deregister(self, namespace: str, name: str) -> dict[str, str]:
        """Remove name from the membership set and rebuild."""

        def remove(routes: dict[str, str]) -> dict[str, str]:
            return {key: value for key, value in routes.items() if key != name}

        async with self._locks.hold(namespace):
            await self._update_membership(namespace, remove)
            routes = await self._rebuild_locked(namespace)
        logger.info(
            "Route for %s deregistered",
            name,
            extra={
                "event": LogEvent.ROUTE_DEREGISTERED,
                "component": Component.PX,
                "namespace": namespace,
                "workload": name,
            },
        )
        return routes

    async def rebuild(self, namespace: str) -> dict[str, str]:
        async with self._locks.hold(namespace):
            return await self._rebuild_locked(namespace)

    async def _update_membership(
        self, namespace: str, mutate: Callable[[dict[str, str]], dict[str, str]]
    ) -> None:
        cm_name = self._cfg.routes_config_map_name

        async def attempt() -> None:
            current = await self._cluster.read_config_map(namespace, cm_name)
            try:
                if current is None:
                    data = mutate({})
                    if not data:
                        return
                    if not await self._cluster.create_config_map(
                        namespace, cm_name, data, self._labels
                    ):
                        raise VersionConflictError(f"{cm_name} was created concurrently")
                    return
                data = mutate(dict(current.data))
                if data == current.data:
                    return
                await self._cluster.replace_config_map(
                    namespace, cm_name, data, current.resource_version
                )
            except VersionConflictError:
                ROUTE_CAS_CONFLICTS_TOTAL.inc()
                logger.info(
                    "Route membership changed concurrently, retrying",
                    extra={
                        "event": LogEvent.ROUTE_CAS_CONFLICT,
                        "component": Component.PX,
                        "namespace": namespace,
                    },
                )
                raise

        await with_retry(
            attempt,
            max_retries=self._cfg.cas_max_retries,
            base_delay=self._cfg.cas_base_delay,
            max_delay=self._cfg.cas_max_delay,
            retry_on=lambda exc: isinstance(exc, VersionConflictError),
        )

    # =========================================================================
    # Rebuild
    # =========================================================================

    async def _rebuild_locked(self, namespace: str) -> dict[str, str]:
        cm_name = self._cfg.routes_config_map_name
        try:
            for _ in range(self._cfg.rebuild_max_passes):
                snapshot = await self._cluster.read_config_map(namespace, cm_name)
                routes = dict(snapshot.data) if snapshot else {}
                version = snapshot.resource_version if snapshot else None

                await self._write_rendered(namespace, routes)

                after = await self._cluster.read_config_map(namespace, cm_name)
                if (after.resource_version if after else None) == version:
                    break
                logger.info(
                    "Route membership moved during rebuild, rendering again",
                    extra={"component": Component.PX, "namespace": namespace},
                )
            else:
                raise InfrastructureError(
                    f"Route membership in {namespace} kept changing during rebuild"
                )
        except Exception:
            ROUTE_REBUILDS_TOTAL.labels(result="failure").inc()
            raise

        ROUTE_REBUILDS_TOTAL.labels(result="success").inc()
        logger.info(
            "Routes rebuilt for %s (%d route(s))",
            namespace,
            len(routes),
            extra={
                "event": LogEvent.ROUTES_REBUILT,
                "component": Component.PX,
                "namespace": namespace,
                "routes": len(routes),
            },
        )
        return routes

    async def _write_rendered(self, namespace: str, routes: dict[str, str]) -> None:
        cfg = self._cfg
        nginx, route = self.render(namespace, routes)
        await self._write_nginx_config(namespace, nginx, create=bool(routes))

        if routes:
            await self._cluster.apply_ingress_route(namespace, cfg.ingress_route_name, route)
        else:
            await self._cluster.delete_ingress_route(namespace, cfg.ingress_route_name)

        # Pod template annotation rolls the proxy when its config changes
        digest = config_hash(nginx)
        proxy = await self._cluster.read_deployment(namespace, cfg.deployment_name)
        if proxy is not None and proxy.pod_annotations.get(cfg.config_hash_annotation) != digest:
            await self._cluster.patch_pod_annotations(
                namespace, cfg.deployment_name, {cfg.config_hash_annotation: digest}
            )

    async def _write_nginx_config(self, namespace: str, nginx: str, create: bool) -> None:
        cm_name = self._cfg.config_map_name
        data = {NGINX_CONFIG_KEY: nginx}

        async def attempt() -> None:
            current = await self._cluster.read_config_map(namespace, cm_name)
            if current is None:
                if create:
                    await self._cluster.create_config_map(namespace, cm_name, data, self._labels)
                return
            if current.data != data:
                await self._cluster.replace_config_map(
                    namespace, cm_name, data, current.resource_version
                )

        await with_retry(
            attempt,
            max_retries=self._cfg.cas_max_retries,
            base_delay=self._cfg.cas_base_delay,
            max_delay=self._cfg.cas_max_delay,
            retry_on=lambda exc: isinstance(exc, VersionConflictError),
        )
