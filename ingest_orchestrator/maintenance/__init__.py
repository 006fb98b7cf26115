from .parse_sweep import reconcile_stranded_parses

__all__ = [
    "reconcile_stranded_parses",
]
