"""
catalog.py -- Device registry and base-value table used by the valuation engine.

DeviceCatalog is a repository object handed to ValuationEngine at construction
time. The DEFAULT_* tables below only seed the default catalog; the engine
never reads them directly, so tests and deployments can swap in their own data
(see DeviceCatalog.from_json and the CATALOG_PATH setting).

The serial-prefix patterns are a bootstrap heuristic for demo serials. They
are not a substitute for an authoritative registry: production lookups should
go through core/fetcher.AlchemyClient.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from .models import DeviceModel

logger = logging.getLogger("equipped.catalog")

DEFAULT_BASE_VALUE = 300.0

DEFAULT_BASE_VALUES: dict[str, float] = {
    "MacBook Air M1": 600,
    "MacBook Air M2": 800,
    "MacBook Pro 14 M1": 1000,
    "MacBook Pro 14 M2": 1200,
    "MacBook Pro 16 M1": 1200,
    "MacBook Pro 16 M2": 1500,
    "iPad Pro 11": 400,
    "iPad Pro 12.9": 550,
    "iPad Air": 300,
    "iPhone": 200,
}

DEFAULT_DEVICES: dict[str, DeviceModel] = {
    "C02XYZ123ABC": DeviceModel(
        model="MacBook Air M1",
        year=2021,
        color="Space Gray",
        storage="256GB",
        specs={"chip": "Apple M1", "memory": "8GB", "display": "13.3-inch Retina"},
        image_url="/images/devices/macbook-air-m1.jpg",
    ),
    "C02ABC456DEF": DeviceModel(
        model="MacBook Pro 14 M2",
        year=2023,
        color="Silver",
        storage="512GB",
        specs={"chip": "Apple M2 Pro", "memory": "16GB", "display": "14.2-inch Liquid Retina XDR"},
        image_url="/images/devices/macbook-pro-14-m2.jpg",
    ),
    "F9GNX8L4PQRS": DeviceModel(
        model="MacBook Pro 16 M1",
        year=2021,
        color="Space Gray",
        storage="1TB",
        specs={"chip": "Apple M1 Pro", "memory": "32GB", "display": "16.2-inch Liquid Retina XDR"},
        image_url="/images/devices/macbook-pro-16-m1.jpg",
    ),
    "DMPYH2ABC123": DeviceModel(
        model="iPad Pro 12.9",
        year=2022,
        color="Space Gray",
        storage="256GB",
        specs={"chip": "Apple M2", "connectivity": "Wi-Fi + Cellular", "display": "12.9-inch Liquid Retina XDR"},
        image_url="/images/devices/ipad-pro-12.jpg",
    ),
    "FF2ABC123456": DeviceModel(
        model="iPhone 14 Pro",
        year=2022,
        color="Deep Purple",
        storage="256GB",
        specs={"chip": "A16 Bionic", "display": "6.1-inch Super Retina XDR"},
        image_url="/images/devices/iphone-14-pro.jpg",
    ),
}

_MACBOOK_AIR_M1 = DeviceModel(
    model="MacBook Air M1",
    year=2021,
    color="Space Gray",
    storage="256GB",
    specs={"chip": "Apple M1", "memory": "8GB", "display": "13.3-inch Retina"},
    image_url="/images/devices/macbook-air-m1.jpg",
)

# Checked in order; first matching prefix wins.
DEFAULT_PREFIX_PATTERNS: list[tuple[str, DeviceModel]] = [
    ("C02", _MACBOOK_AIR_M1),
    ("F", _MACBOOK_AIR_M1),
]


class DeviceCatalog:
    def __init__(
        self,
        devices: Optional[dict[str, DeviceModel]] = None,
        base_values: Optional[dict[str, float]] = None,
        prefix_patterns: Optional[list[tuple[str, DeviceModel]]] = None,
        default_base_value: float = DEFAULT_BASE_VALUE,
    ) -> None:
        source = DEFAULT_DEVICES if devices is None else devices
        self._devices = {k.strip().upper(): v for k, v in source.items()}
        self._base_values = dict(DEFAULT_BASE_VALUES if base_values is None else base_values)
        self._patterns = list(DEFAULT_PREFIX_PATTERNS if prefix_patterns is None else prefix_patterns)
        self.default_base_value = default_base_value

    @classmethod
    def from_json(cls, path: str) -> "DeviceCatalog":
        """Load a catalog from a JSON file.

        Expected shape (every key optional):
            {
              "devices": {"SERIAL": {"model": ..., "year": ..., "color": ...}},
              "prefix_patterns": [["C02", {"model": ...}]],
              "base_values": {"MacBook Air M1": 600},
              "default_base_value": 300
            }
        Missing sections fall back to the built-in defaults.
        """
        raw = json.loads(Path(path).read_text())
        devices = None
        if "devices" in raw:
            devices = {serial: DeviceModel(**spec) for serial, spec in raw["devices"].items()}
        patterns = None
        if "prefix_patterns" in raw:
            patterns = [(prefix, DeviceModel(**spec)) for prefix, spec in raw["prefix_patterns"]]
        catalog = cls(
            devices=devices,
            base_values=raw.get("base_values"),
            prefix_patterns=patterns,
            default_base_value=float(raw.get("default_base_value", DEFAULT_BASE_VALUE)),
        )
        logger.info(
            "Loaded device catalog from %s (%d devices, %d base values)",
            path,
            len(catalog._devices),
            len(catalog._base_values),
        )
        return catalog

    def find_exact(self, serial: str) -> Optional[DeviceModel]:
        return self._devices.get(serial)

    def find_by_pattern(self, serial: str) -> Optional[DeviceModel]:
        for prefix, device in self._patterns:
            if serial.startswith(prefix):
                return device
        return None

    def base_value(self, model: str) -> tuple[float, bool]:
        """Return (base_value, known). Unknown models get the fallback value."""
        if model in self._base_values:
            return float(self._base_values[model]), True
        return self.default_base_value, False

    def to_dict(self) -> dict:
        return {
            "devices": {serial: asdict(d) for serial, d in self._devices.items()},
            "prefix_patterns": [[prefix, asdict(d)] for prefix, d in self._patterns],
            "base_values": dict(self._base_values),
            "default_base_value": self.default_base_value,
        }


def load_catalog(path: str = "") -> DeviceCatalog:
    """Return the catalog at path, or the built-in default when path is empty."""
    if not path:
        return DeviceCatalog()
    return DeviceCatalog.from_json(path)
