# -*- coding: utf-8 -*-
"""
Unit Conversion Engine

Deterministic conversion between a node's activity unit and the unit its
emission factor is expressed per (``kgCO2e/kg`` is "per kg"). All factors
are exact Decimal ratios to one base unit per category; unknown or
incompatible units fail loudly with UnitConversionError.

Supports:
- Mass: g, kg, t, lb
- Distance: m, km, mile
- Area: m2, ha, acre
- Volume: L, mL, m3, gallon
- Energy: Wh, kWh, MWh, MJ, GJ
- Time: h, day, year
- Transport: t-km, kg-km
- Items: piece, item, unit
"""

from decimal import Decimal
from typing import Dict, List, Optional, Union

from carbonflow.exceptions import UnitConversionError


def normalize_unit(unit: str) -> str:
    """Lowercase and trim a unit, joining compound units with '-'."""
    text = unit.strip().lower()
    for separator in ("*", "·", "×"):
        text = text.replace(separator, "-")
    return "_".join(text.split())


def factor_denominator(unit: str) -> str:
    """Unit an emission factor is expressed per.

    ``"kgCO2e/kWh"`` gives ``"kWh"``; a unit without ``/`` is returned as-is.
    """
    if "/" in unit:
        return unit.rsplit("/", 1)[1].strip()
    return unit.strip()


class UnitConverter:
    """Deterministic unit converter for activity and factor units.

    GUARANTEES:
    - Same input gives the same output
    - Unknown units raise UnitConversionError
    - Units of different categories raise UnitConversionError
    """

    # Mass conversions (to kg as base unit)
    MASS_TO_KG: Dict[str, Decimal] = {
        'mg': Decimal('0.000001'),
        'g': Decimal('0.001'),
        'gram': Decimal('0.001'),
        'grams': Decimal('0.001'),
        'kg': Decimal('1.0'),
        'kilogram': Decimal('1.0'),
        'kilograms': Decimal('1.0'),
        't': Decimal('1000.0'),
        'tonne': Decimal('1000.0'),
        'tonnes': Decimal('1000.0'),
        'ton': Decimal('1000.0'),
        'tons': Decimal('1000.0'),
        'lb': Decimal('0.453592'),
        'lbs': Decimal('0.453592'),
    }

    # Distance conversions (to km as base unit)
    DISTANCE_TO_KM: Dict[str, Decimal] = {
        'mm': Decimal('0.000001'),
        'cm': Decimal('0.00001'),
        'm': Decimal('0.001'),
        'meter': Decimal('0.001'),
        'meters': Decimal('0.001'),
        'km': Decimal('1.0'),
        'kilometer': Decimal('1.0'),
        'kilometers': Decimal('1.0'),
        'mile': Decimal('1.60934'),
        'miles': Decimal('1.60934'),
    }

    # Area conversions (to m2 as base unit)
    AREA_TO_M2: Dict[str, Decimal] = {
        'cm2': Decimal('0.0001'),
        'm2': Decimal('1.0'),
        'square_meter': Decimal('1.0'),
        'km2': Decimal('1000000.0'),
        'ha': Decimal('10000.0'),
        'hectare': Decimal('10000.0'),
        'acre': Decimal('4046.86'),
    }

    # Volume conversions (to liters as base unit)
    VOLUME_TO_LITERS: Dict[str, Decimal] = {
        'ml': Decimal('0.001'),
        'l': Decimal('1.0'),
        'liter': Decimal('1.0'),
        'liters': Decimal('1.0'),
        'litre': Decimal('1.0'),
        'm3': Decimal('1000.0'),
        'cubic_meter': Decimal('1000.0'),
        'gallon': Decimal('3.78541'),
        'gal': Decimal('3.78541'),
    }

    # Energy conversions (to kWh as base unit)
    ENERGY_TO_KWH: Dict[str, Decimal] = {
        'wh': Decimal('0.001'),
        'kwh': Decimal('1.0'),
        'mwh': Decimal('1000.0'),
        'gwh': Decimal('1000000.0'),
        'mj': Decimal('0.277778'),
        'gj': Decimal('277.778'),
    }

    # Time conversions (to hours as base unit)
    TIME_TO_HOURS: Dict[str, Decimal] = {
        's': Decimal('0.000277778'),
        'min': Decimal('0.0166667'),
        'h': Decimal('1.0'),
        'hr': Decimal('1.0'),
        'hour': Decimal('1.0'),
        'hours': Decimal('1.0'),
        'day': Decimal('24.0'),
        'days': Decimal('24.0'),
        'year': Decimal('8760.0'),
        'years': Decimal('8760.0'),
    }

    # Freight conversions (to tonne-kilometres as base unit)
    TRANSPORT_TO_TKM: Dict[str, Decimal] = {
        'kg-km': Decimal('0.001'),
        'kgkm': Decimal('0.001'),
        't-km': Decimal('1.0'),
        'tkm': Decimal('1.0'),
        'tonne-km': Decimal('1.0'),
        'ton-km': Decimal('1.0'),
    }

    # Countable items (to one piece as base unit)
    ITEMS_TO_PIECES: Dict[str, Decimal] = {
        'piece': Decimal('1.0'),
        'pieces': Decimal('1.0'),
        'pcs': Decimal('1.0'),
        'item': Decimal('1.0'),
        'items': Decimal('1.0'),
        'unit': Decimal('1.0'),
        'units': Decimal('1.0'),
        'dozen': Decimal('12.0'),
    }

    def __init__(self):
        self.conversion_tables = {
            'mass': self.MASS_TO_KG,
            'distance': self.DISTANCE_TO_KM,
            'area': self.AREA_TO_M2,
            'volume': self.VOLUME_TO_LITERS,
            'energy': self.ENERGY_TO_KWH,
            'time': self.TIME_TO_HOURS,
            'transport': self.TRANSPORT_TO_TKM,
            'items': self.ITEMS_TO_PIECES,
        }

    def convert(
        self,
        value: Union[float, Decimal],
        from_unit: str,
        to_unit: str,
    ) -> float:
        """
        Convert value from one unit to another.

        Args:
            value: Numerical value to convert
            from_unit: Source unit (e.g., 'g', 'kWh')
            to_unit: Target unit (e.g., 'kg', 'MJ')

        Returns:
            Converted value as float

        Raises:
            UnitConversionError: If units unknown or incompatible
        """
        from_key = normalize_unit(from_unit)
        to_key = normalize_unit(to_unit)

        if from_key == to_key:
            return float(value)

        if not isinstance(value, Decimal):
            value = Decimal(str(value))

        from_category = self._get_unit_category(from_key)
        to_category = self._get_unit_category(to_key)

        if from_category is None:
            raise UnitConversionError(
                f"Unknown unit: {from_unit}", context={"unit": from_unit},
            )
        if to_category is None:
            raise UnitConversionError(
                f"Unknown unit: {to_unit}", context={"unit": to_unit},
            )
        if from_category != to_category:
            raise UnitConversionError(
                f"Cannot convert between different unit types: "
                f"{from_unit} ({from_category}) to {to_unit} ({to_category})",
                context={"from": from_unit, "to": to_unit},
            )

        table = self.conversion_tables[from_category]
        base_value = value * table[from_key]
        return float(base_value / table[to_key])

    def conversion_factor(self, activity_unit: str, factor_unit: str) -> float:
        """Multiplier turning a quantity in ``activity_unit`` into ``factor_unit``.

        ``factor_unit`` may be a full emission-factor unit such as
        ``kgCO2e/kg``; only the part after the last ``/`` is used.
        """
        return self.convert(1, activity_unit, factor_denominator(factor_unit))

    def _get_unit_category(self, unit: str) -> Optional[str]:
        for category, table in self.conversion_tables.items():
            if unit in table:
                return category
        return None

    def is_compatible(self, unit1: str, unit2: str) -> bool:
        """True when both units are known and belong to the same category."""
        category1 = self._get_unit_category(normalize_unit(unit1))
        category2 = self._get_unit_category(normalize_unit(unit2))
        return category1 is not None and category1 == category2

    def list_supported_units(self, category: Optional[str] = None) -> Dict[str, List[str]]:
        """List supported units, optionally for one category."""
        if category:
            if category not in self.conversion_tables:
                raise ValueError(f"Unknown category: {category}")
            return {category: list(self.conversion_tables[category].keys())}
        return {
            cat: list(table.keys())
            for cat, table in self.conversion_tables.items()
        }


__all__ = [
    "UnitConverter",
    "normalize_unit",
    "factor_denominator",
]
