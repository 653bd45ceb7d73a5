"""
rollout-core — build-and-deploy pipelines.

Stages run as a dependency graph (:mod:`rollout.orchestration`), builds are
published as checksum-verified releases (:mod:`rollout.release`) and
deployed to host groups (:mod:`rollout.targets`, :mod:`rollout.deploy`)
with atomic switch-over and rollback.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("rollout-core")
except PackageNotFoundError:  # source checkout without install
    __version__ = "0.0.0"
