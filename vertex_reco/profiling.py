from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Optional


_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
}


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: str = "cumtime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
):
    r"""
    Toggleable :mod:`cProfile` context manager around a batch of vertex fits.

    Parameters
    ----------
    enable : bool, optional
        When ``False`` the block runs unprofiled and ``None`` is yielded.
    sort : {"tottime", "cumtime", "calls", "ncalls", "name"}, optional
        Sort order of the report; unknown keys fall back to ``"cumtime"``.
    limit : int or None, optional
        Number of rows printed.
    out_path : str, optional
        Write the text report here instead of logging it.
    logger : logging.Logger, optional
        Destination of the report (module logger by default).

    Yields
    ------
    cProfile.Profile or None
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        elapsed = time.perf_counter() - t0

        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s).strip_dirs()
        ps.sort_stats(_SORT_KEYS.get(str(sort).lower(), pstats.SortKey.CUMULATIVE))
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n" + s.getvalue()

        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        else:
            (logger or logging.getLogger(__name__)).info(text)
