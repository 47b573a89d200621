"""Destination normalization package.

One normalizer per channel destination type.  Each normalizer takes the
raw destination a subscriber typed in and returns its canonical form, or
``None`` when the value is not deliverable on that channel.  Normalizers
never raise and never log raw values.

``normalize_destination`` dispatches on the channel name.
"""
from __future__ import annotations

from parcelnotify.normalization.destination import normalize_destination  # noqa: F401
