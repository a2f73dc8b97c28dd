# src/mongo_mirror/__init__.py
"""
mongo-mirror: continuous, crash-safe one-way replication between MongoDB
collections.

Documents flow from a source collection into a target collection either by
tailing the source change stream or by incrementally scanning on a sync
field. Progress is checkpointed after every applied batch so the process
can be stopped and restarted at any time.

The primary entry point for programmatic use is the `MirrorPipeline` class.
"""

from typing import List

from mongo_mirror.pipeline import MirrorPipeline

__all__: List[str] = ["MirrorPipeline"]
