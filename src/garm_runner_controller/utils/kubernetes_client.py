"""
Kubernetes pool source for the GARM runner controller.

Reads garm-operator Pool custom resources and turns each one that already
exists in GARM into a :class:`PoolConfiguration` carrying its idle policy.
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..models.config import PoolConfiguration

POOL_GROUP = "garm-operator.mercedes-benz.com"
POOL_VERSION = "v1beta1"
POOL_PLURAL = "pools"


class KubernetesPoolSourceError(Exception):
    """Raised when Pool resources cannot be read."""
    pass


def load_kubernetes_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


class KubernetesPoolSource:
    """
    Lists Pool custom resources through the CustomObjects API.

    Args:
        namespace: Namespace to list, empty for all namespaces
        api: CustomObjectsApi instance, created from the loaded config if omitted
        logger: Structured logger instance
    """

    def __init__(self,
                 namespace: str = "",
                 api: Optional[client.CustomObjectsApi] = None,
                 logger: Any = None) -> None:
        self.namespace = namespace
        self.logger = (logger or structlog.get_logger()).bind(
            component="k8s_pool_source",
            namespace=namespace or "*"
        )
        self.api = api or client.CustomObjectsApi()

    async def list_pools(self) -> List[PoolConfiguration]:
        try:
            response = await asyncio.to_thread(self._list)
        except ApiException as e:
            self.logger.error("Failed to list Pool resources", status=e.status, reason=e.reason)
            raise KubernetesPoolSourceError(f"listing pools failed: {e.reason}") from e

        pools = []
        for item in response.get("items", []):
            pool = self._to_pool(item)
            if pool is not None:
                pools.append(pool)
        return pools

    def _list(self) -> Dict[str, Any]:
        if self.namespace:
            return self.api.list_namespaced_custom_object(
                group=POOL_GROUP,
                version=POOL_VERSION,
                namespace=self.namespace,
                plural=POOL_PLURAL,
            )
        return self.api.list_cluster_custom_object(
            group=POOL_GROUP,
            version=POOL_VERSION,
            plural=POOL_PLURAL,
        )

    def _to_pool(self, item: Dict[str, Any]) -> Optional[PoolConfiguration]:
        metadata = item.get("metadata", {})
        name = metadata.get("name", "")
        pool_id = (item.get("status") or {}).get("id")

        # not yet created in GARM
        if not pool_id:
            self.logger.debug("Skipping pool without GARM ID", pool=name)
            return None

        if metadata.get("deletionTimestamp"):
            self.logger.debug("Skipping pool being deleted", pool=name)
            return None

        spec = item.get("spec") or {}
        try:
            return PoolConfiguration(
                name=name,
                id=pool_id,
                min_idle_runners=int(spec.get("min_idle_runners", 0)),
            )
        except ValueError as e:
            self.logger.warning("Skipping invalid Pool resource", pool=name, error=str(e))
            return None
