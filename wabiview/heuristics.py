"""
Coinjoin classification heuristic.

WabiSabi coinjoins have many inputs, many outputs and, above all,
several outputs paying the exact same standard denomination. That
last property is what we key on. Everything here is a pure function
over the verbose ``getrawtransaction`` shape so it can be checked
without a node.
"""

import math
from collections import Counter
from decimal import Decimal
from typing import Any

from bitcoin.core import COIN

MIN_INPUTS = 5
MIN_OUTPUTS = 5
MIN_EQUAL_OUTPUTS = 3


def btc_to_sats(value: Any) -> int:
    """Convert a whole-coin amount to satoshis without float noise."""
    return int(Decimal(str(value)) * COIN)


def output_values_sats(tx: dict[str, Any]) -> list[int]:
    return [
        btc_to_sats(output["value"])
        for output in tx.get("vout", [])
        if output.get("value") is not None
    ]


def output_value_sats(tx: dict[str, Any]) -> int:
    """Sum of the declared output values, in satoshis."""
    return sum(output_values_sats(tx))


def largest_equal_output_group(tx: dict[str, Any]) -> int:
    """Size of the biggest group of outputs sharing one exact value."""
    counts = Counter(output_values_sats(tx))
    return max(counts.values(), default=0)


def looks_like_coinjoin(tx: dict[str, Any]) -> bool:
    """
    Check if a transaction looks like a WabiSabi coinjoin.

    Args:
        tx: Verbose transaction as returned by ``getrawtransaction``

    Returns:
        True when there are at least 5 inputs, 5 outputs, and 3 outputs
        of identical value.
    """
    vin = tx.get("vin")
    vout = tx.get("vout")
    if vin is None or vout is None:
        return False

    if len(vin) < MIN_INPUTS or len(vout) < MIN_OUTPUTS:
        return False

    return largest_equal_output_group(tx) >= MIN_EQUAL_OUTPUTS


def from_esplora(tx: dict[str, Any]) -> dict[str, Any]:
    """
    Reshape an Electrs/Esplora transaction into the node's verbose shape.

    Esplora reports output values in satoshis and weight instead of
    vsize; the heuristic and the recorder expect coin values and vsize.
    """
    status = tx.get("status") or {}
    shaped = {
        "txid": tx.get("txid"),
        "vin": tx.get("vin", []),
        "vout": [
            {"value": Decimal(output.get("value", 0)) / COIN}
            for output in tx.get("vout", [])
        ],
        "vsize": math.ceil(tx.get("weight", 0) / 4),
    }
    if status.get("confirmed") and status.get("block_hash"):
        shaped["blockhash"] = status["block_hash"]
    return shaped
