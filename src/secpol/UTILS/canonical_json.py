"""
Canonical JSON text for policy documents.

The guest decodes the document with a Go JSON decoder, so the text is
produced the way Go's encoder writes it: no insignificant whitespace,
map keys in lexicographic order, raw UTF-8, and the HTML-sensitive
characters escaped.
"""
import json
from typing import Any, Dict, Iterable, Mapping

_GO_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def sorted_map(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Returns a copy of the mapping with keys in lexicographic order
    ("10" sorts before "2", as in Go).
    """
    return {key: mapping[key] for key in sorted(mapping)}


def indexed_map(values: Iterable[Any]) -> Dict[str, Any]:
    """
    Encodes a sequence as {"length": n, "elements": {"0": v0, ...}}.
    """
    elements = {str(i): value for i, value in enumerate(values)}
    return {"length": len(elements), "elements": sorted_map(elements)}


def keyed_map(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Encodes a mapping that already carries its own keys.
    """
    return {"length": len(mapping), "elements": sorted_map(mapping)}


def dumps(document: Any) -> str:
    """
    Serializes a document of dicts, lists, strings, numbers, booleans
    and None. Dict insertion order is kept, so callers control field order.
    """
    text = json.dumps(document, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    for char, escape in _GO_ESCAPES.items():
        text = text.replace(char, escape)
    return text
