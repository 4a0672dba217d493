"""
Rebalance detection against the subscription-gated data source.

One RebalanceDetector exists per scheduled run. Each call to detect() loads
the session cookie (cheaply, see TradingSession.ensure_cookie_loaded), fetches
the strategy's primary endpoint and, if configured, a faster-publishing
secondary endpoint in parallel. Every raw body is archived before it is
classified and parsed, so cookie and captcha problems can be diagnosed from
the data directory afterwards.

Detection failures never stop the polling loop: they are logged, written to
the run log and an empty event list is returned so the next tick retries.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .alerts import Alert, AlertManager, AlertSeverity, AlertType
from .errors import (
    AuthExpiredError,
    BlockedError,
    DetectionError,
    MalformedResponseError,
    TransientFetchError,
)
from .logging_utils import TradingLogger, get_trading_logger
from .models import EndpointKind, OrderSide, RebalanceEvent, StrategyProfile
from .session import TradingSession


USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Response markers
SHORT_BODY_THRESHOLD = 1000
SUBSCRIPTION_MARKER = "Subscription is required"
CAPTCHA_MARKER = "captcha.js"
NOT_PAYWALLED_MARKER = '"isPaywalled":false'


@dataclass
class DetectorSettings:
    """File locations and HTTP limits shared by all detectors."""
    cookie_path: Path
    data_dir: Path
    request_timeout_seconds: float = 20.0


class ResponseArchive:
    """Writes every raw response body to a timestamped file."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save(self, prefix: str, body: str, now: Optional[datetime] = None) -> Path:
        stamp = (now or datetime.now()).strftime("%Y%m%dT%H%M%S")
        path = self.data_dir / f"{prefix}_{stamp}.json"
        path.write_text(body, encoding="utf-8")
        return path


def classify_response(body: str, kind: EndpointKind, archive_path: Optional[str] = None) -> None:
    """
    Raise the matching DetectionError if the body is an error page.

    Transactions endpoints answer a short "Subscription is required" page
    when the cookie expired. Article endpoints still return articles, but
    with paywalled (empty) ticker lists, so the absence of the
    not-paywalled marker is what signals an expired cookie there.
    """
    if kind is EndpointKind.TRANSACTIONS:
        if len(body) < SHORT_BODY_THRESHOLD:
            if SUBSCRIPTION_MARKER in body:
                raise AuthExpiredError("No permission, update cookie file", archive_path)
            if CAPTCHA_MARKER in body:
                raise BlockedError(
                    "Captcha required, update cookie file and solve captcha in browser",
                    archive_path,
                )
        return

    if CAPTCHA_MARKER in body:
        raise BlockedError(
            "Captcha required, update cookie file and solve captcha in browser",
            archive_path,
        )
    if NOT_PAYWALLED_MARKER not in body:
        raise AuthExpiredError("Articles are paywalled, update cookie file", archive_path)


def _load_json_document(body: str, archive_path: Optional[str]) -> Tuple[List[Any], List[Any]]:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Response is not JSON: {e}", archive_path)

    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise MalformedResponseError("Response has no 'data' list", archive_path)

    included = payload.get("included") or []
    if not isinstance(included, list):
        raise MalformedResponseError("Response 'included' is not a list", archive_path)
    return payload["data"], included


def _mapping(value: Any, what: str, archive_path: Optional[str]) -> Dict[str, Any]:
    """Return ``value`` if it is a JSON object, else raise MalformedResponseError."""
    if not isinstance(value, dict):
        raise MalformedResponseError(
            f"Expected {what} to be an object, got {type(value).__name__}", archive_path
        )
    return value


def _string(value: Any, what: str, archive_path: Optional[str]) -> str:
    if not isinstance(value, str):
        raise MalformedResponseError(
            f"Expected {what} to be a string, got {type(value).__name__}", archive_path
        )
    return value


def parse_transactions(
    body: str,
    target_date: str,
    archive_path: Optional[str] = None,
) -> Tuple[List[RebalanceEvent], int]:
    """
    Parse a portfolio-history response.

    Returns:
        (events on target_date, number of transaction records parsed)
    """
    transactions, included = _load_json_document(body, archive_path)

    stocks: Dict[str, Dict[str, Any]] = {}
    for item in included:
        if isinstance(item, dict) and "id" in item:
            stocks[str(item["id"])] = _mapping(
                item.get("attributes") or {}, "included attributes", archive_path
            )

    events: List[RebalanceEvent] = []
    for tr in transactions:
        try:
            tr = _mapping(tr, "transaction", archive_path)
            attrs = _mapping(tr["attributes"], "transaction attributes", archive_path)
            action_date = _string(attrs["actionDate"], "actionDate", archive_path)
            action = _string(attrs["action"], "action", archive_path)
            ticker_ref = _mapping(tr["relationships"]["ticker"]["data"], "ticker reference", archive_path)
            ticker_id = str(ticker_ref["id"])
            transaction_id = str(tr["id"])
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected transaction shape: {e!r}", archive_path)

        if action_date != target_date:
            continue
        if attrs.get("rule") == "rebalance":
            continue

        side = OrderSide.from_action(action)
        stock = stocks.get(ticker_id)
        if side is None or stock is None:
            continue

        events.append(RebalanceEvent(
            transaction_id=transaction_id,
            side=side,
            action_date=action_date,
            ticker=str(stock.get("name") or ""),
            company_name=str(stock.get("companyName") or ""),
            price=attrs.get("price"),
            starting_weight=attrs.get("startingWeight"),
            new_weight=attrs.get("newWeight"),
        ))

    return events, len(transactions)


def parse_articles(
    body: str,
    target_date: str,
    archive_path: Optional[str] = None,
) -> Tuple[List[RebalanceEvent], int]:
    """
    Parse an analysis/articles response.

    Every primary ticker of an article published on target_date is a buy.
    Tickers with an exchange suffix (e.g. "CLS:CA") are not US listings and
    are skipped.

    Returns:
        (events on target_date, number of tag records parsed)
    """
    articles, included = _load_json_document(body, archive_path)

    tags: Dict[str, Tuple[str, str]] = {}
    for item in included:
        if isinstance(item, dict) and item.get("type") == "tag" and "id" in item:
            attrs = _mapping(item.get("attributes") or {}, "tag attributes", archive_path)
            tags[str(item["id"])] = (str(attrs.get("name") or ""), str(attrs.get("company") or ""))

    events: List[RebalanceEvent] = []
    for article in articles:
        try:
            article = _mapping(article, "article", archive_path)
            attrs = _mapping(article["attributes"], "article attributes", archive_path)
            publish_on = _string(attrs["publishOn"], "publishOn", archive_path)
            article_id = str(article["id"])
            relationships = _mapping(article.get("relationships") or {}, "relationships", archive_path)
            primary = _mapping(relationships.get("primaryTickers") or {}, "primaryTickers", archive_path)
            refs = primary.get("data") or []
            if not isinstance(refs, list):
                raise MalformedResponseError("Expected primaryTickers data to be a list", archive_path)
            refs = [_mapping(ref, "primary ticker reference", archive_path) for ref in refs]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected article shape: {e!r}", archive_path)

        publish_date = publish_on[:10]  # 2025-10-15T12:00:23-04:00
        if publish_date != target_date:
            continue

        for ref in refs:
            if ref.get("type") != "tag":
                continue
            tag = tags.get(str(ref.get("id")))
            if tag is None:
                continue
            name, company = tag
            if ":" in name:
                continue
            events.append(RebalanceEvent(
                transaction_id=article_id,
                side=OrderSide.BUY,
                action_date=publish_date,
                ticker=name,
                company_name=company,
            ))

    return events, len(tags)


_PARSERS = {
    EndpointKind.TRANSACTIONS: parse_transactions,
    EndpointKind.ARTICLES: parse_articles,
}


class RebalanceDetector:
    """
    Polls a strategy's endpoints and turns responses into RebalanceEvents.

    Holds one aiohttp session for its lifetime so repeated polls reuse the
    keep-alive connection; call close() when the run is over.
    """

    def __init__(
        self,
        profile: StrategyProfile,
        settings: DetectorSettings,
        archive: Optional[ResponseArchive] = None,
        alert_manager: Optional[AlertManager] = None,
        logger: Optional[TradingLogger] = None,
    ):
        self.profile = profile
        self.settings = settings
        self.archive = archive or ResponseArchive(settings.data_dir)
        self.alert_manager = alert_manager
        self.logger = logger or get_trading_logger()
        self._http: Optional[aiohttp.ClientSession] = None

    async def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds),
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def fetch_text(self, url: str, cookie: str) -> str:
        """GET ``url`` with the session cookie and return the raw body."""
        http = await self._get_http()
        try:
            async with http.get(url, headers={"Cookie": cookie}) as response:
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientFetchError(f"GET {url} failed: {e!r}")

    async def detect(self, session: TradingSession) -> Tuple[str, List[RebalanceEvent]]:
        """
        Poll once for rebalance events on the session's target date.

        Returns:
            (target date as YYYY-MM-DD, events found; empty on any failure)
        """
        target = session.target_date_str
        try:
            cookie = session.ensure_cookie_loaded(self.settings.cookie_path)
        except AuthExpiredError as e:
            await self._record_failure(session, "cookie", e)
            return target, []

        # Re-established below as soon as any record parses with this cookie
        session.cookie_verified_working = False

        secondary: Optional[asyncio.Task] = None
        if self.profile.secondary_endpoint:
            secondary = asyncio.create_task(self._poll_endpoint(
                session, cookie, self.profile.secondary_endpoint,
                EndpointKind.ARTICLES, f"{self.profile.file_prefix}_analysis_src",
            ))

        try:
            events = await self._poll_endpoint(
                session, cookie, self.profile.primary_endpoint,
                self.profile.primary_kind, f"{self.profile.file_prefix}_src",
            )
        except BaseException:
            if secondary is not None:
                secondary.cancel()
            raise

        if secondary is not None:
            if events:
                secondary.cancel()
            else:
                # The secondary page publishes earlier but holds buys only
                events = await secondary
                if events:
                    session.log(f"Using {len(events)} event(s) from secondary endpoint")

        return target, events

    async def _poll_endpoint(
        self,
        session: TradingSession,
        cookie: str,
        url: str,
        kind: EndpointKind,
        archive_prefix: str,
    ) -> List[RebalanceEvent]:
        target = session.target_date_str
        archive_path: Optional[str] = None
        try:
            body = await self.fetch_text(url, cookie)
            archive_path = await self._archive(archive_prefix, body)
            classify_response(body, kind, archive_path)
            events, records = _PARSERS[kind](body, target, archive_path)
        except DetectionError as e:
            if e.archive_path is None:
                e.archive_path = archive_path
            await self._record_failure(session, url, e)
            return []

        if records > 0:
            session.cookie_verified_working = True

        self.logger.log_detection(
            strategy=self.profile.name,
            target_date=target,
            endpoint=url,
            num_events=len(events),
            archive_path=archive_path,
            metadata={"records": records, "kind": kind.value},
        )
        session.log(f"{kind.value}: {records} record(s) parsed, {len(events)} event(s) on {target}")
        return events

    async def _archive(self, prefix: str, body: str) -> Optional[str]:
        """Save the raw body off the event loop. A failed write only costs the archive."""
        try:
            path = await asyncio.to_thread(self.archive.save, prefix, body)
        except OSError as e:
            self.logger.logger.warning(
                "archive_write_failed",
                strategy=self.profile.name,
                prefix=prefix,
                error=str(e),
            )
            return None
        return str(path)

    async def _record_failure(self, session: TradingSession, endpoint: str, error: DetectionError) -> None:
        outcome = type(error).__name__
        self.logger.log_detection(
            strategy=self.profile.name,
            target_date=session.target_date_str,
            endpoint=endpoint,
            num_events=0,
            outcome=outcome,
            error_message=str(error),
            archive_path=error.archive_path,
        )
        session.log(f"!Error. {error}")

        # One operator alert per failure kind per run, the loop keeps retrying
        alert_type = {
            AuthExpiredError: AlertType.COOKIE_EXPIRED,
            BlockedError: AlertType.CAPTCHA_BLOCKED,
        }.get(type(error))
        if alert_type is None or self.alert_manager is None or outcome in session.alerted:
            return
        session.alerted.add(outcome)
        await self.alert_manager.send_alert(Alert(
            alert_type=alert_type,
            severity=AlertSeverity.WARNING,
            title=f"{self.profile.name}: {outcome}",
            message=str(error),
            timestamp=datetime.utcnow(),
        ))
