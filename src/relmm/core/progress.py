"""Shared progress bar utility for relmm.

Marker streams are lazy and single-pass, so the total is often unknown;
progressbar2 handles that with an UnknownLength bar.
"""

import sys
from collections.abc import Iterable, Iterator

import progressbar


def progress_iterator(
    iterable: Iterable, total: int | None = None, desc: str = ""
) -> Iterator:
    """Wrap iterator with progressbar2 progress display.

    Writes to stdout so output interleaves with loguru's console sink.
    The bar is finalized in a try/finally block so that early breaks or
    exceptions from the caller don't leave terminal output corrupted.

    Args:
        iterable: Iterable to wrap.
        total: Total number of items, or None when unknown.
        desc: Optional description prefix.

    Yields:
        Items from the wrapped iterable.
    """
    if total is None:
        max_value = progressbar.UnknownLength
        widgets = [
            f"{desc}: " if desc else "",
            progressbar.Counter(),
            " ",
            progressbar.Timer(),
        ]
    else:
        max_value = total
        widgets = [
            f"{desc}: " if desc else "",
            progressbar.Counter(),
            f"/{total} ",
            progressbar.Percentage(),
            " ",
            progressbar.Bar(),
            " ",
            progressbar.Timer(),
            " ",
            progressbar.ETA(),
        ]
    bar = progressbar.ProgressBar(max_value=max_value, widgets=widgets, fd=sys.stdout)
    bar.start()
    try:
        for i, item in enumerate(iterable):
            yield item
            bar.update(i + 1)
    finally:
        bar.finish()
