"""Anchor prices and per-symbol parameters for the synthetic source."""

from __future__ import annotations

from dataclasses import dataclass

from .models import to_fixed


@dataclass(frozen=True, slots=True)
class SymbolSpec:
    """Anchor price and minimum price increment, both fixed-point."""

    anchor: int
    tick: int
    band_ticks: int  # the walk stays within anchor +/- band_ticks * tick


def _spec(anchor: str, tick: str, band: float = 0.02) -> SymbolSpec:
    anchor_fx = to_fixed(anchor)
    tick_fx = to_fixed(tick)
    # Snap the anchor onto the tick grid
    anchor_fx -= anchor_fx % tick_fx
    return SymbolSpec(anchor=anchor_fx, tick=tick_fx, band_ticks=max(1, int(anchor_fx * band) // tick_fx))


# CME parent symbols served by the synthetic source (levels as of project creation)
SYMBOL_SPECS: dict[str, SymbolSpec] = {
    "ES.FUT": _spec("5000.00", "0.25"),
    "NQ.FUT": _spec("17500.00", "0.25"),
    "YM.FUT": _spec("38000", "1"),
    "RTY.FUT": _spec("2000.0", "0.1"),
    "CL.FUT": _spec("75.00", "0.01", band=0.04),  # Crude is more volatile
    "NG.FUT": _spec("2.500", "0.001", band=0.06),
    "GC.FUT": _spec("2050.0", "0.1"),
    "SI.FUT": _spec("23.000", "0.005", band=0.04),
    "ZN.FUT": _spec("110.5", "0.015625", band=0.01),  # 1/64 of a point
    "6E.FUT": _spec("1.0900", "0.00005", band=0.01),
}

# Trade sizes: geometric with this success probability (mean ~2.9 contracts)
SIZE_GEOMETRIC_P = 0.35

# Occasional block trades
BLOCK_TRADE_PROBABILITY = 0.01
BLOCK_TRADE_MULTIPLIER = (10, 50)

# Random-walk move in ticks per trade, drawn uniformly from [-MAX_MOVE, MAX_MOVE]
MAX_MOVE_TICKS = 2

# Mean gap between consecutive trades of one symbol
DEFAULT_HISTORICAL_GAP_SECONDS = 0.25
DEFAULT_LIVE_GAP_SECONDS = 0.3  # ~100-500 ms between live trades
