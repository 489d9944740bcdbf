"""
Polyline decoders.

- decode_polyline: Google encoded polyline (Google, Mapbox, OSRM)
- decode_flexible_polyline: HERE flexible polyline (router v8)
"""

from walksafe.geo import Coordinates

_FLEX_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
_FLEX_DECODING = {ch: i for i, ch in enumerate(_FLEX_ALPHABET)}


def decode_polyline(encoded: str, precision: int = 5) -> list[Coordinates]:
    """Decode a Google encoded polyline into coordinates."""
    points: list[Coordinates] = []
    factor = 10 ** precision
    index, lat, lng = 0, 0, 0
    length = len(encoded)

    while index < length:
        deltas = []
        for _ in range(2):
            shift, result = 0, 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        points.append(Coordinates(lat / factor, lng / factor))

    return points


def _flex_unsigned_values(encoded: str):
    result, shift = 0, 0
    for ch in encoded:
        try:
            value = _FLEX_DECODING[ch]
        except KeyError:
            raise ValueError(f"Invalid flexible polyline character {ch!r}")
        result |= (value & 0x1F) << shift
        if value & 0x20:
            shift += 5
        else:
            yield result
            result, shift = 0, 0
    if shift:
        raise ValueError("Truncated flexible polyline")


def _to_signed(value: int) -> int:
    return ~(value >> 1) if value & 1 else value >> 1


def decode_flexible_polyline(encoded: str) -> list[Coordinates]:
    """Decode a HERE flexible polyline. A third dimension, if present, is dropped."""
    if not encoded:
        return []
    values = _flex_unsigned_values(encoded)
    version = next(values)
    if version != 1:
        raise ValueError(f"Unsupported flexible polyline version {version}")
    header = next(values)
    precision = header & 0x0F
    third_dim = (header >> 4) & 0x07
    factor = 10 ** precision

    points: list[Coordinates] = []
    lat = lng = 0
    values = list(values)
    stride = 3 if third_dim else 2
    if len(values) % stride:
        raise ValueError("Truncated flexible polyline")
    for i in range(0, len(values), stride):
        lat += _to_signed(values[i])
        lng += _to_signed(values[i + 1])
        points.append(Coordinates(lat / factor, lng / factor))
    return points
