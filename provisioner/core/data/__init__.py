"""
Packaged data — the default module manifest.

Usage::

    from provisioner.core.data import DEFAULT_MANIFEST

    graph = load_manifest(DEFAULT_MANIFEST)
"""

from __future__ import annotations

from pathlib import Path

DATA_DIR = Path(__file__).parent
DEFAULT_MANIFEST = DATA_DIR / "modules.yaml"
