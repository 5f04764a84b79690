"""Build orchestration module.

This module handles:
- Compiling the kernel and user programs for the bare-metal target
- Pointing compiles at the vendored crate cache
- Publishing the kernel and firmware at their conventional paths
- Cleaning build outputs and reverting the vendored-source override
"""

from rvos_forge.builds.service import (
    BuildOutcome,
    BuildTargets,
    build,
    clean,
    collect_user_artifacts,
)

__all__ = [
    "BuildOutcome",
    "BuildTargets",
    "build",
    "clean",
    "collect_user_artifacts",
]
