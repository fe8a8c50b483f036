"""Cuaderno: a local-first notebook tree with multi-device sync.

Notebooks hold folders and pages; page content lives in separate blobs.
The sync engine reconciles the local tree against a single remote manifest
using per-entity versions, dirty flags and deletion tombstones.
"""

__version__ = "0.3.0"
