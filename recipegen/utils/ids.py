"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_batch_id() -> str:
  """Return a new batch identifier."""
  return f"batch_{uuid.uuid4().hex}"


def generate_record_id() -> str:
  """Return a new opaque recipe identifier."""
  return str(uuid.uuid4())


def generate_concept_id() -> str:
  """Return a new concept identifier."""
  return str(uuid.uuid4())
