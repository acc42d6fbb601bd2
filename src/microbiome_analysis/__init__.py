"""
Microbiome Analysis package initialization
"""

from importlib import import_module
from types import ModuleType
from typing import Any, Final

__all__: Final = [
    "MicrobiomeDataset",
    "load_dataset",
    "load_biom_dataset",
    "load_dataset_dir",
    "save_dataset",
    "rarefy",
    "alpha_diversity",
    "beta_diversity",
    "ordinate",
    "permanova",
]

_LOCATIONS: Final = {
    "MicrobiomeDataset": ".dataset",
    "load_dataset": ".data_loader",
    "load_biom_dataset": ".data_loader",
    "load_dataset_dir": ".data_loader",
    "save_dataset": ".data_loader",
    "rarefy": ".diversity",
    "alpha_diversity": ".diversity",
    "beta_diversity": ".ordination",
    "ordinate": ".ordination",
    "permanova": ".ordination",
}


def __getattr__(name: str) -> Any:  # PEP 562
    if name in _LOCATIONS:
        mod: ModuleType = import_module(_LOCATIONS[name], __name__)
        attr = getattr(mod, name)
        globals()[name] = attr          # cache for future look-ups
        return attr
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
