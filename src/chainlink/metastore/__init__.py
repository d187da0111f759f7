from .helpers import ZkConnectionManager, create_zk_client
from .store import Metastore

__all__ = ['ZkConnectionManager', 'create_zk_client', 'Metastore']
