import importlib
from typing import Any, Dict, Optional


def load_object(spec: str, params: Optional[Dict[str, Any]] = None) -> Any:
    """Instantiate 'module.path:ClassName' with keyword params."""
    if not spec or ":" not in spec:
        raise ValueError("adapter.class must be 'module.path:ClassName'")
    mod, cls = spec.split(":", 1)
    m = importlib.import_module(mod)
    C = getattr(m, cls)
    return C(**(params or {}))
