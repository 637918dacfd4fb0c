"""vaultsync — asset analysis pipeline with real-time owner sync.

The background half of the collectibles vault: uploaded assets are queued
for AI analysis, processed by a worker pool, and the result is pushed to
every live connection of the owner. A small client library keeps a local
cache in step with those pushes.
"""

__version__ = "0.1.0"
