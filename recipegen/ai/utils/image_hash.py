"""Perceptual difference hashing for near-duplicate image detection."""

from __future__ import annotations

import io

from PIL import Image

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE


def difference_hash(image_bytes: bytes, hash_size: int = HASH_SIZE) -> str:
  """Return the dHash of an image as a hex string.

  The image is reduced to grayscale at (hash_size + 1) x hash_size and each bit
  records whether a pixel is brighter than its right-hand neighbour.
  """
  with Image.open(io.BytesIO(image_bytes)) as image:
    reduced = image.convert("L").resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
    pixels = list(reduced.getdata())

  value = 0
  for row in range(hash_size):
    offset = row * (hash_size + 1)
    for col in range(hash_size):
      value = (value << 1) | int(pixels[offset + col] > pixels[offset + col + 1])
  return f"{value:0{hash_size * hash_size // 4}x}"


def hamming_distance(left: str, right: str) -> int:
  """Count differing bits between two hex hashes of equal length."""
  if len(left) != len(right):
    raise ValueError("Hashes must have the same length.")
  return (int(left, 16) ^ int(right, 16)).bit_count()


def similarity(left: str, right: str) -> float:
  """Return 1.0 for identical hashes down to 0.0 when every bit differs."""
  bits = len(left) * 4
  return 1.0 - hamming_distance(left, right) / bits
