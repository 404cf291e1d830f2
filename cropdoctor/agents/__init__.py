# CropDoctor Agents
"""
Diagnosis cascade.

Exports:
- FallbackOrchestrator: runs tiers in order and returns the first success
- LocalTier / RemoteVisionTier / RemoteFallbackTier: the standard tiers
"""
from .orchestrator import (
    CascadeResult,
    FallbackOrchestrator,
    TierAttempt,
    build_default_orchestrator,
)
from .tiers import (
    FreeText,
    LocalTier,
    RemoteFallbackTier,
    RemoteVisionTier,
    Structured,
    normalize,
)

__all__ = [
    'CascadeResult',
    'FallbackOrchestrator',
    'TierAttempt',
    'build_default_orchestrator',
    'FreeText',
    'LocalTier',
    'RemoteFallbackTier',
    'RemoteVisionTier',
    'Structured',
    'normalize',
]
