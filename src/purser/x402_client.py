"""
x402 payment executor.

Wraps the official x402 Python SDK so a ``PaymentGateway`` can pay for
HTTP 402-protected endpoints in USDC on Base mainnet or Base Sepolia.
The gateway has already reserved the budget, so this client refuses any
402 requirement that asks for more than the reserved amount.

Flow for one call: plain request, and if the server answers 402, pick an
acceptable requirement, sign it, and replay the request with the payment
header attached.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from x402 import x402ClientSync
from x402.http.x402_http_client import x402HTTPClientSync
from x402.mechanisms.evm.exact import ExactEvmScheme

from .gateway import ExecutorResponse
from .money import format_amount

logger = logging.getLogger(__name__)


class Network(str, Enum):
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"


@dataclass
class X402Config:
    network: Network = Network.BASE_SEPOLIA
    timeout_seconds: float = 30.0
    max_amount: int = 10_000_000  # hard client ceiling, base units
    max_retries: int = 2
    retry_delay: float = 1.0


# EIP-712 domain keys with the attribute spellings SDK domain objects use.
_DOMAIN_KEYS = {
    "name": ("name",),
    "version": ("version",),
    "chainId": ("chain_id", "chainId"),
    "verifyingContract": ("verifying_contract", "verifyingContract"),
    "salt": ("salt",),
}


class LocalAccountSigner:
    """x402 EVM signer backed by an in-process eth-account key."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, domain, types, primary_type, message) -> bytes:
        # primary_type is implied by message_types for eth-account
        message_types = {
            name: [_as_field(f) for f in members]
            for name, members in types.items()
            if name != "EIP712Domain"
        }
        data = {
            k: ("0x" + v.hex() if isinstance(v, bytes) else v)
            for k, v in message.items()
        }
        signed = self._account.sign_typed_data(
            domain_data=_as_domain(domain),
            message_types=message_types,
            message_data=data,
        )
        return bytes(signed.signature)


def _as_field(member: Any) -> dict[str, str]:
    if isinstance(member, dict):
        return {"name": member["name"], "type": member["type"]}
    return {"name": member.name, "type": member.type}


def _as_domain(domain: Any) -> dict[str, Any]:
    if isinstance(domain, dict):
        return dict(domain)
    out = {}
    for key, spellings in _DOMAIN_KEYS.items():
        value = next(
            (getattr(domain, s) for s in spellings if getattr(domain, s, None) is not None),
            None,
        )
        if value is not None:
            out[key] = value
    return out


@dataclass
class AcceptedRequirement:
    network: str
    pay_to: str
    amount: int
    requirement: Any


@dataclass
class PaymentPolicy:
    """What this client will agree to pay for a single 402 challenge."""

    ceiling: int
    networks: set[str]
    payees: set[str] = field(default_factory=set)

    def check(self, req: Any) -> Optional[str]:
        network = str(getattr(req, "network", ""))
        pay_to = str(getattr(req, "pay_to", ""))
        amount = int(getattr(req, "amount", "0"))
        if network not in self.networks:
            return f"402 requirement network {network} not allowed"
        if self.payees and pay_to.lower() not in self.payees:
            return f"402 payee {pay_to} not allowed"
        if amount > self.ceiling:
            return f"402 amount {amount} exceeds approved max {self.ceiling}"
        return None

    def select(self, payment_required: Any) -> AcceptedRequirement | str:
        """First requirement that passes, else the reason the first one failed."""
        accepts = getattr(payment_required, "accepts", None)
        if not accepts:
            return "No payment requirements in 402 response"

        reasons = []
        for req in accepts:
            reason = self.check(req)
            if reason is None:
                return AcceptedRequirement(
                    network=str(req.network),
                    pay_to=str(req.pay_to),
                    amount=int(req.amount),
                    requirement=req,
                )
            reasons.append(reason)
        return reasons[0] if reasons else "No acceptable 402 requirement matched policy"


class X402PaymentClient:
    """``PaymentExecutor`` that settles x402 payments with the official SDK."""

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        config: Optional[X402Config] = None,
        signer: Any = None,
        http_client: Optional[httpx.Client] = None,
    ):
        if signer is None and account is None:
            raise ValueError("Provide either account or signer")
        self.config = config or X402Config()
        self._signer = signer if signer is not None else LocalAccountSigner(account)

        sdk_client = x402ClientSync()
        sdk_client.register(self.config.network.value, ExactEvmScheme(signer=self._signer))
        self._http_handler = x402HTTPClientSync(client=sdk_client)
        self._http = http_client or httpx.Client(timeout=self.config.timeout_seconds)

    @classmethod
    def from_private_key(cls, private_key: str, config: Optional[X402Config] = None):
        return cls(account=Account.from_key(private_key), config=config)

    @property
    def address(self) -> str:
        return self._signer.address

    def __call__(self, url: str, options: dict[str, Any]) -> ExecutorResponse:
        """Request ``url``, paying at most ``options['max_amount']`` if challenged."""
        request_kwargs = dict(options)
        method = request_kwargs.pop("method", "GET")
        pay_to = request_kwargs.pop("pay_to", None)
        network = request_kwargs.pop("network", None)
        idempotency_key = request_kwargs.pop("idempotency_key", None)
        policy = self.policy_for(
            max_amount=request_kwargs.pop("max_amount", None),
            allowed_networks=[network] if network else None,
            allowed_payees=[pay_to] if pay_to and pay_to != "unknown" else None,
        )

        headers = dict(request_kwargs.pop("headers", None) or {})
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        return self._with_retries(
            lambda: self._request_and_pay(url, method, headers, request_kwargs, policy)
        )

    def _with_retries(self, attempt_fn: Callable[[], ExecutorResponse]) -> ExecutorResponse:
        attempts = self.config.max_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                return attempt_fn()
            except httpx.TimeoutException as e:
                last_error = f"Request timeout: {e}"
            except httpx.ConnectError as e:
                last_error = f"Connection failed: {e}"
            if attempt < attempts:
                logger.info("Retryable error (attempt %d/%d): %s", attempt, attempts, last_error)
                time.sleep(self.config.retry_delay * attempt)
        return ExecutorResponse(
            ok=False, status=0, body=f"Failed after {attempts} attempts: {last_error}"
        )

    def policy_for(
        self,
        max_amount: Optional[int],
        allowed_networks: Optional[list[str]],
        allowed_payees: Optional[list[str]],
    ) -> PaymentPolicy:
        ceiling = self.config.max_amount
        if max_amount is not None:
            ceiling = min(ceiling, int(max_amount))
        return PaymentPolicy(
            ceiling=ceiling,
            networks=set(allowed_networks or [self.config.network.value]),
            payees={p.lower() for p in allowed_payees or []},
        )

    def _request_and_pay(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        request_kwargs: dict[str, Any],
        policy: PaymentPolicy,
    ) -> ExecutorResponse:
        first = self._http.request(method, url, headers=headers, **request_kwargs)
        if first.status_code != 402:
            return _unpaid(first.is_success, first.status_code, _body(first))

        signed = self._sign_challenge(url, first, policy)
        if isinstance(signed, ExecutorResponse):
            return signed
        accepted, payment_headers = signed

        paid = self._http.request(
            method, url, headers={**headers, **payment_headers}, **request_kwargs
        )
        if not paid.is_success:
            return _unpaid(False, paid.status_code, _body(paid))

        tx_hash = self._settlement_tx(url, paid)
        logger.info(
            "x402 payment settled for %s: %s on %s (tx: %s)",
            url, format_amount(accepted.amount), accepted.network, tx_hash or "n/a",
        )
        return ExecutorResponse(
            ok=True,
            status=paid.status_code,
            body=_body(paid),
            tx_hash=tx_hash,
            evidence={
                "paid": True,
                "network": accepted.network,
                "pay_to": accepted.pay_to,
                "amount": str(accepted.amount),
            },
        )

    def _sign_challenge(self, url: str, challenge: httpx.Response, policy: PaymentPolicy):
        """Returns ``(accepted, payment_headers)`` or an ``ExecutorResponse`` refusal."""
        challenge_headers = {k.lower(): v for k, v in challenge.headers.items()}
        try:
            payment_required = self._http_handler.get_payment_required_response(
                lambda name: challenge_headers.get(name.lower()),
                challenge.content,
            )
        except Exception as e:
            return _unpaid(False, 402, f"Failed to parse 402 requirements: {type(e).__name__}: {e}")

        accepted = policy.select(payment_required)
        if isinstance(accepted, str):
            logger.warning("Refusing x402 payment for %s: %s", url, accepted)
            return _unpaid(False, 402, accepted)
        if not hasattr(payment_required, "model_copy"):
            return _unpaid(False, 402, "Unsupported x402 payment version")

        narrowed = payment_required.model_copy(update={"accepts": [accepted.requirement]})
        try:
            payload = self._http_handler.create_payment_payload(narrowed)
            return accepted, self._http_handler.encode_payment_signature_header(payload)
        except Exception as e:
            return _unpaid(False, 402, f"Failed to create payment: {type(e).__name__}: {e}")

    def _settlement_tx(self, url: str, paid: httpx.Response) -> Optional[str]:
        try:
            settle = self._http_handler.get_payment_settle_response(paid.headers.get)
        except Exception:
            logger.warning("Paid response for %s carried no readable settlement header", url)
            return None
        for attr in ("transaction", "tx_hash", "transaction_hash"):
            value = getattr(settle, attr, None)
            if value:
                return value
        return None

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _unpaid(ok: bool, status: int, body: Any) -> ExecutorResponse:
    return ExecutorResponse(ok=ok, status=status, body=body, evidence={"paid": False})


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
