"""Metered virtual try-on pipeline."""
from .errors import GenerationFailed, InternalError, InvalidInput, LimitExceeded, TryOnError
from .orchestrator import GenerationOutcome, ImageInput, ProductRef, TryOnOrchestrator

__all__ = [
    "GenerationFailed",
    "GenerationOutcome",
    "ImageInput",
    "InternalError",
    "InvalidInput",
    "LimitExceeded",
    "ProductRef",
    "TryOnError",
    "TryOnOrchestrator",
]
