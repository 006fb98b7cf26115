# ingest_orchestrator/ingestion/__init__.py

from .bundle_resolver import add_files, initialize_from_parent, resolve_bundle, stage_bundle_member
from .dispatch import DISPATCH_RULES, DispatchResult, DispatchRouter, DispatchRule, dispatch_parse

__all__ = [
    "DISPATCH_RULES",
    "DispatchResult",
    "DispatchRouter",
    "DispatchRule",
    "add_files",
    "dispatch_parse",
    "initialize_from_parent",
    "resolve_bundle",
    "stage_bundle_member",
]
