# src/systemd_exporter/modules/units.py
# -*- coding: utf-8 -*-

import logging
import re
from typing import Iterable, List, Pattern, Union

from ..datatypes import UnitDescriptor

log = logging.getLogger(__name__)

DEFAULT_UNIT_WHITELIST = r".+"
DEFAULT_UNIT_BLACKLIST = r".+\.(device)"
LOADED_STATE = "loaded"


def compile_unit_pattern(pattern: Union[str, Pattern[str]]) -> Pattern[str]:
    """Compiles a unit name pattern; matching is always against the full name."""
    if isinstance(pattern, re.Pattern):
        return pattern
    return re.compile(pattern)


def filter_units(
    units: Iterable[UnitDescriptor],
    whitelist: Union[str, Pattern[str]] = DEFAULT_UNIT_WHITELIST,
    blacklist: Union[str, Pattern[str]] = DEFAULT_UNIT_BLACKLIST,
) -> List[UnitDescriptor]:
    """
    Keeps units that match the whitelist, do not match the blacklist and are
    loaded. Input order is preserved.

    Args:
        units: Units as returned by ListUnits.
        whitelist: Regex (or compiled pattern) the full unit name must match.
        blacklist: Regex (or compiled pattern) the full unit name must not match.
    """
    whitelist_pattern = compile_unit_pattern(whitelist)
    blacklist_pattern = compile_unit_pattern(blacklist)
    filtered: List[UnitDescriptor] = []
    for unit in units:
        if (
            whitelist_pattern.fullmatch(unit.name)
            and not blacklist_pattern.fullmatch(unit.name)
            and unit.load_state == LOADED_STATE
        ):
            log.debug(f"Adding unit: {unit.name}")
            filtered.append(unit)
        else:
            log.debug(f"Ignoring unit: {unit.name}")
    return filtered
