"""Protocol definitions for dependency inversion.

`core/` depends on these abstractions; `modules/` implements them and
`interfaces/` wires them together at startup.
"""

from .fetcher import FetchError, IFetcher

__all__ = ["FetchError", "IFetcher"]
