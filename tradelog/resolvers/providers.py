"""Market-data providers used to map CUSIPs to tickers.

Every provider exposes:

    search_symbols(query) -> list[dict]      # keys: symbol, identifier?, name, exchange, type
    batch_lookup(identifiers) -> dict[str, str]

A provider raises ResolutionError for transient failures (network, rate
limit, HTTP errors); "nothing found" is an empty result, not an error.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Optional

import requests
import yfinance as yf

from ..errors import ResolutionError
from .identifiers import pick_ticker

logger = logging.getLogger(__name__)


class YFinanceProvider:
    """Yahoo Finance symbol search. No native batch endpoint."""

    name = "yfinance"

    def __init__(self, max_results: int = 10) -> None:
        self.max_results = max_results

    def search_symbols(self, query: str) -> list[dict[str, Any]]:
        try:
            search = yf.Search(query, max_results=self.max_results, news_count=0)
            quotes = search.quotes or []
        except Exception as e:
            raise ResolutionError(f"yfinance search failed: {e}", identifier=query) from e

        results = []
        for q in quotes:
            symbol = q.get("symbol")
            if not symbol:
                continue
            results.append({
                "symbol": symbol,
                "name": q.get("shortname") or q.get("longname"),
                "exchange": q.get("exchange"),
                "type": q.get("quoteType"),
            })
        return results

    def batch_lookup(self, identifiers: Iterable[str]) -> dict[str, str]:
        found: dict[str, str] = {}
        for ident in identifiers:
            try:
                results = self.search_symbols(ident)
            except ResolutionError as e:
                logger.debug("[CUSIP] yfinance lookup failed for %s: %s", ident, e)
                continue
            ticker = pick_ticker(results, ident)
            if ticker:
                found[ident] = ticker
        return found


_OPENFIGI_URL = "https://api.openfigi.com/v3/mapping"

# Jobs per mapping request: 100 with an API key, 10 without
_OPENFIGI_BATCH_WITH_KEY = 100
_OPENFIGI_BATCH_ANONYMOUS = 10


class OpenFigiProvider:
    """OpenFIGI mapping API (CUSIP -> FIGI records with tickers)."""

    name = "openfigi"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("OPENFIGI_API_KEY")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def batch_limit(self) -> int:
        return _OPENFIGI_BATCH_WITH_KEY if self.api_key else _OPENFIGI_BATCH_ANONYMOUS

    def _post(self, identifiers: list[str]) -> list[dict[str, Any]]:
        jobs = [{"idType": "ID_CUSIP", "idValue": ident} for ident in identifiers]
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-OPENFIGI-APIKEY"] = self.api_key

        try:
            resp = self.session.post(
                _OPENFIGI_URL, json=jobs, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ResolutionError(f"OpenFIGI request failed: {e}") from e

        if resp.status_code == 429:
            raise ResolutionError("OpenFIGI rate limit hit")
        if not resp.ok:
            raise ResolutionError(f"OpenFIGI HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ResolutionError(f"OpenFIGI returned a non-JSON body: {e}") from e
        if not isinstance(data, list):
            raise ResolutionError("OpenFIGI returned an unexpected payload")
        return data

    @staticmethod
    def _records(entry: dict[str, Any], identifier: str) -> list[dict[str, Any]]:
        records = []
        for d in entry.get("data") or []:
            if not d.get("ticker"):
                continue
            records.append({
                "symbol": d["ticker"],
                "identifier": identifier,
                "name": d.get("name"),
                "exchange": d.get("exchCode"),
                "type": d.get("securityType"),
            })
        # US composite listing first
        records.sort(key=lambda r: 0 if r.get("exchange") == "US" else 1)
        return records

    def search_symbols(self, query: str) -> list[dict[str, Any]]:
        data = self._post([query])
        if not data or not isinstance(data[0], dict):
            return []
        return self._records(data[0], query)

    def batch_lookup(self, identifiers: Iterable[str]) -> dict[str, str]:
        idents = list(dict.fromkeys(identifiers))
        found: dict[str, str] = {}
        for start in range(0, len(idents), self.batch_limit):
            chunk = idents[start:start + self.batch_limit]
            data = self._post(chunk)
            for ident, entry in zip(chunk, data):
                if not isinstance(entry, dict):
                    continue
                if entry.get("error") or entry.get("warning"):
                    logger.debug("[CUSIP] OpenFIGI: %s -> %s", ident, entry.get("error") or entry.get("warning"))
                    continue
                ticker = pick_ticker(self._records(entry, ident), ident)
                if ticker:
                    found[ident] = ticker
        return found


class ChainedProvider:
    """Try several providers in order.

    ``search_symbols`` returns the first non-empty result set. A provider
    that fails is skipped; ResolutionError is raised only when every
    provider failed.
    """

    name = "chained"

    def __init__(self, providers: list[Any]) -> None:
        self.providers = providers

    def search_symbols(self, query: str) -> list[dict[str, Any]]:
        errors = []
        for provider in self.providers:
            try:
                results = provider.search_symbols(query)
            except ResolutionError as e:
                errors.append(f"{getattr(provider, 'name', provider)}: {e}")
                continue
            if results:
                return results
        if errors and len(errors) == len(self.providers):
            raise ResolutionError("; ".join(errors), identifier=query)
        return []

    def batch_lookup(self, identifiers: Iterable[str]) -> dict[str, str]:
        remaining = list(dict.fromkeys(identifiers))
        found: dict[str, str] = {}
        errors = []
        for provider in self.providers:
            if not remaining:
                break
            try:
                hits = provider.batch_lookup(remaining)
            except ResolutionError as e:
                errors.append(f"{getattr(provider, 'name', provider)}: {e}")
                continue
            found.update(hits)
            remaining = [i for i in remaining if i not in found]
        if errors and len(errors) == len(self.providers):
            raise ResolutionError("; ".join(errors))
        return found
