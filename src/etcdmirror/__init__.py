"""etcdmirror — keep a local directory and an etcd key prefix in sync."""

__version__ = "0.1.0"
