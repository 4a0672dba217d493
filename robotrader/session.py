"""
Per-run trading session state.

A TradingSession is created fresh for every scheduled run and thrown away at
the end of it. It owns the cached session cookie, the "has traded" flag and
the human-readable run log that is mailed out when the run finishes. Nothing
in here is shared between concurrently running strategies.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Set

import pytz

from .errors import AuthExpiredError
from .models import CapitalAllocation

logger = logging.getLogger(__name__)


@dataclass
class TradingSession:
    """Mutable, single-use state of one scheduled run."""
    strategy: str
    target_date: date
    is_run_day: bool
    is_simulation: bool = True
    capital: CapitalAllocation = field(default_factory=CapitalAllocation)
    cookie: Optional[str] = None
    cookie_mtime: Optional[float] = None
    cookie_verified_working: bool = False
    cookie_reads: int = 0
    alerted: Set[str] = field(default_factory=set)
    _has_traded: bool = field(default=False, init=False)
    _log_lines: List[str] = field(default_factory=list, init=False)

    @property
    def target_date_str(self) -> str:
        return self.target_date.isoformat()

    @property
    def has_traded(self) -> bool:
        return self._has_traded

    def try_mark_traded(self) -> bool:
        """
        Flip has_traded from False to True.

        Returns False if trading already happened in this session. Callers
        must submit directly after a True result without awaiting anything
        in between.
        """
        if self._has_traded:
            return False
        self._has_traded = True
        return True

    def log(self, message: str) -> None:
        """Append a timestamped line to the run log."""
        stamp = datetime.now(pytz.UTC).strftime("%H:%M:%S")
        self._log_lines.append(f"{stamp}: {message}")

    @property
    def run_log(self) -> str:
        return "\n".join(self._log_lines)

    def ensure_cookie_loaded(self, cookie_path: Path) -> str:
        """
        Make sure a session cookie is cached, re-reading the file only when needed.

        Once the cookie is known to work the file is not even stat-ed. Otherwise
        the file's mtime is checked and the contents are re-read only if it
        changed or nothing is cached yet.

        Raises:
            AuthExpiredError: cookie file is missing, unreadable or empty
        """
        if self.cookie_verified_working and self.cookie:
            return self.cookie

        try:
            mtime = os.stat(cookie_path).st_mtime
        except FileNotFoundError:
            raise AuthExpiredError(f"Cookie file {cookie_path} not found")
        except OSError as e:
            raise AuthExpiredError(f"Cookie file {cookie_path} is not accessible: {e}")

        if self.cookie is None or self.cookie_mtime != mtime:
            try:
                content = Path(cookie_path).read_text(encoding="utf-8").strip()
            except UnicodeDecodeError:
                raise AuthExpiredError(f"Cookie file {cookie_path} is not valid UTF-8")
            except OSError as e:
                raise AuthExpiredError(f"Cookie file {cookie_path} could not be read: {e}")
            self.cookie_reads += 1
            if not content:
                raise AuthExpiredError(f"Cookie file {cookie_path} is empty")
            self.cookie = content
            self.cookie_mtime = mtime
            logger.info("Cookies loaded/refreshed from %s", cookie_path)

        return self.cookie
