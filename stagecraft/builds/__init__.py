"""Build orchestration module.

This module handles:
- Recipe planning and skeleton materialisation
- Override set application
- Isolated stage environments and artifact hand-off
- Running stage commands with log capture
- The cook cache (content-addressed dependency layers)
- Runtime image export and verification
- Pipeline run records
"""

from stagecraft.builds.models import CacheLayer, PipelineRun, StageRun

__all__ = ["CacheLayer", "PipelineRun", "StageRun"]

# Lazy imports for submodules to avoid circular imports
# Access via stagecraft.builds.service, etc.
