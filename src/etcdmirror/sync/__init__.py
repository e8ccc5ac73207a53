"""Bidirectional sync between a local directory and an etcd key prefix.

Remote changes arrive through a watch stream and are written to disk;
local edits are found by a periodic scan and uploaded. A shared change
ledger records the mtime of every file the daemon writes so its own
writes are never uploaded back.
"""
