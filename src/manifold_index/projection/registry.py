# projection/registry.py
from manifold_index.contracts.projection import Projector
from manifold_index.exceptions.core import ConfigError

PROJECTOR_REGISTRY: dict[str, type] = {}

# ----------------------------------------------------------------------
# Concrete projectors self-register with @register_projector; importing
# them here would create a cycle with the modules that use the registry.
# ----------------------------------------------------------------------

def register_projector(name: str):
    """
    Decorator: @register_projector("pca")
    """
    def decorator(cls):
        PROJECTOR_REGISTRY[name] = cls
        cls.name = name
        return cls
    return decorator


def build_projector(name: str, **params) -> Projector:
    if name not in PROJECTOR_REGISTRY:
        raise ConfigError(f"Projector '{name}' not found in registry.")
    return PROJECTOR_REGISTRY[name](**params)
