"""Typed JSON-RPC client for Bitcoin Cash node software.

The client backs :class:`bazaar_index.chain.RPCChainScanner`. It only covers
the read paths the indexer needs: transaction lookup, block lookup, the
watch-only transaction list used as an address history, and ``scantxoutset``
for live unspent outputs. No consensus logic lives here; the client forwards
well-typed requests and surfaces errors clearly.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import requests
from requests import RequestException, Response

from .config import RPCConfig

logger = logging.getLogger(__name__)


class RPCError(RuntimeError):
    """Raised when the node responds with an RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common read-path JSON-RPC errors."""

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))

    if code == -5 and "No such mempool or blockchain transaction" in message:
        return (
            "The node does not know this transaction. Start it with -txindex=1 so confirmed "
            "transactions outside the wallet can be looked up."
        )
    if code == -8 and "Scan already in progress" in message:
        return "Another scantxoutset call is running on the node; retry the refresh shortly."
    if code == -18 or ("wallet" in message.lower() and "not found" in message.lower()):
        return (
            "No wallet is loaded. Load the watch-only wallet holding the index addresses "
            "(rpc.wallet in ~/.bazaar-index.yaml) before refreshing."
        )
    if code == -32601:
        return "The node does not expose this RPC method; check the node software and version."
    return None


class RPCTransportError(RuntimeError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NodeRPCClient:
    """Typed JSON-RPC client for Bitcoin Cash Node compatible daemons.

    Each helper maps directly to an RPC method and returns the parsed JSON
    result. Build the :class:`RPCConfig` with
    :func:`bazaar_index.config.load_rpc_config`, so ``BAZAAR_RPC_*`` environment
    variables take precedence over the YAML file.
    """

    def __init__(self, config: RPCConfig, timeout: float = 30.0) -> None:
        self.config = config
        self.timeout = timeout
        self._session = requests.Session()
        self._base_url = config.base_url
        self._wallet = config.wallet

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Perform a JSON-RPC request."""

        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or [],
        }
        logger.debug("RPC call %s params=%s", method, params)
        try:
            response = self._session.post(
                self._url,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.error(
                "RPC connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                "RPC connection failed. Ensure the node is reachable, authentication is valid, "
                "and BAZAAR_RPC_* variables (or ~/.bazaar-index.yaml) point to the right host and port."
            ) from exc
        try:
            self._raise_for_status(response)
        except requests.HTTPError as exc:
            raise RPCTransportError(
                "RPC server returned an HTTP error; check the URL, wallet path and authentication.",
                status_code=response.status_code,
            ) from exc
        try:
            result = response.json()
        except ValueError as exc:
            logger.debug("RPC JSON parse error: %s", response.text, exc_info=True)
            raise RPCTransportError("RPC server returned malformed JSON") from exc
        if result.get("error"):
            error = result["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        return result.get("result")

    def _raise_for_status(self, response: Response) -> None:
        # Nodes report JSON-RPC errors as HTTP 500 with a JSON body; unwrap
        # those so the caller sees the structured RPCError.
        if response.status_code == 500:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("error"):
                return
        if not response.ok:
            logger.error("RPC HTTP error %s from %s", response.status_code, response.url)
            if response.status_code == 401:
                raise RPCTransportError(
                    "Unauthorized (401). Ensure BAZAAR_RPC_USER (or your .bazaar-index.yaml) contains valid credentials.",
                    status_code=response.status_code,
                )
        response.raise_for_status()

    @property
    def _url(self) -> str:
        if self._wallet:
            return f"{self._base_url}/wallet/{self._wallet}"
        return self._base_url

    # Convenience wrappers -------------------------------------------------

    def getblock(self, block_hash: str, verbosity: int = 1) -> Dict[str, Any]:
        return self.call("getblock", [block_hash, verbosity])

    def getrawtransaction(self, txid: str, verbose: bool = False) -> Any:
        return self.call("getrawtransaction", [txid, int(verbose)])

    def getrawtransaction_verbose(self, txid: str) -> Dict[str, Any]:
        """Fetch and decode a transaction in a single RPC call."""

        return self.getrawtransaction(txid, verbose=True)

    def listtransactions(
        self, label: str = "*", count: int = 1000, skip: int = 0, include_watchonly: bool = True
    ) -> list[Dict[str, Any]]:
        return self.call("listtransactions", [label, count, skip, include_watchonly])

    def scantxoutset(self, descriptors: list[str]) -> Dict[str, Any]:
        return self.call("scantxoutset", ["start", descriptors])
