"""Infrastructure adapters (record store, cluster API)."""

from wsplane.infra.k8s import KubernetesCluster, load_api_client
from wsplane.infra.postgresql import close_db, create_tables, get_session_factory, init_db
from wsplane.infra.store import SqlRecordStore

__all__ = [
    # DB
    "init_db",
    "close_db",
    "create_tables",
    "get_session_factory",
    "SqlRecordStore",
    # Cluster
    "KubernetesCluster",
    "load_api_client",
]
