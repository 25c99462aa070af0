import itertools
import logging
from typing import Any, Dict, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter, Retry

from .errors import ProviderError

logger = logging.getLogger(__name__)

Params = Union[Dict[str, Any], List[Any]]


class HttpClient:
    """Pooled requests session with urllib3 retries for 429/5xx.

    Transport failures and error statuses surface as ``ProviderError`` so that
    callers can tell a flaky provider from an empty answer.
    """

    def __init__(self, timeout: float, max_retries: int, user_agent: str) -> None:
        self.timeout = timeout
        self.session = requests.Session()
        retry_policy = Retry(
            total=max_retries,
            backoff_factor=0.2,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET", "POST"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_policy, pool_connections=8, pool_maxsize=32)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        self._ids = itertools.count(1)

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError("GET request failed", cause=exc, context={"url": _strip_query(url)}) from exc
        return self._decode(response, url)

    def post_json(
        self,
        url: str,
        payload: Any,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError("POST request failed", cause=exc, context={"url": _strip_query(url)}) from exc
        return self._decode(response, url)

    def rpc(self, url: str, method: str, params: Params) -> Any:
        """JSON-RPC 2.0 call returning ``result``; an ``error`` member raises ProviderError."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        body = self.post_json(url, payload)
        if not isinstance(body, dict):
            raise ProviderError("RPC response was not an object", context={"method": method})
        if body.get("error"):
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ProviderError("RPC returned an error", body=message, context={"method": method})
        return body.get("result")

    def close(self) -> None:
        self.session.close()

    def _decode(self, response: requests.Response, url: str) -> Any:
        status = response.status_code
        if status >= 400:
            logger.debug("provider %s returned %s", _strip_query(url), status)
            raise ProviderError(
                "request returned error status",
                http_status=status,
                body=response.text,
                context={"url": _strip_query(url)},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                "response was not valid JSON",
                http_status=status,
                body=response.text,
                cause=exc,
            ) from exc


def _strip_query(url: str) -> str:
    # API keys travel in the query string (Helius) or the path (Alchemy)
    base = url.split("?", 1)[0]
    if "/v2/" in base:
        base = base.split("/v2/", 1)[0] + "/v2/***"
    return base
