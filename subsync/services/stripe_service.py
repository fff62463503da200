# stripe_service.py
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import stripe

from subsync.errors import NotFound, UpstreamUnavailable
from subsync.services.secret_provider import SecretProvider

logger = logging.getLogger(__name__)


# ==================== CUSTOM EXCEPTIONS ====================

class StripeMisconfiguredError(RuntimeError):
    """Raised when no Stripe API key can be resolved."""

    def __init__(self, missing_config: str = None):
        self.missing_config = missing_config
        msg = "Stripe is misconfigured"
        if missing_config:
            msg = f"Stripe misconfigured: Missing {missing_config}"
        super().__init__(msg)
        self.code = "STRIPE_MISCONFIGURED"


# ==================== HELPERS ====================

def to_plain(obj: Any) -> Any:
    """Convert a Stripe object tree to plain dicts/lists."""
    if isinstance(obj, stripe.StripeObject):
        to_dict = getattr(obj, "to_dict_recursive", None) or obj.to_dict
        return to_dict()
    return obj


@contextmanager
def stripe_operation_context(operation_name: str, **context_vars):
    """
    Log a Stripe call and translate SDK errors into domain errors.

    Example:
        with stripe_operation_context("create_customer", email=email):
            ...
    """
    start_time = datetime.now()
    try:
        yield
    except stripe.InvalidRequestError as e:
        duration = (datetime.now() - start_time).total_seconds()
        logger.warning(
            f"Stripe rejected request: {operation_name}",
            extra={
                "operation": operation_name,
                "duration_seconds": duration,
                "stripe_error": str(e),
                **context_vars,
            },
        )
        if getattr(e, "http_status", None) == 404:
            raise NotFound(e.user_message or str(e), details={"operation": operation_name})
        raise UpstreamUnavailable(
            f"Stripe {operation_name} failed: {e.user_message or e}",
            details={"operation": operation_name},
        )
    except stripe.StripeError as e:
        duration = (datetime.now() - start_time).total_seconds()
        logger.error(
            f"Stripe operation failed: {operation_name}",
            exc_info=True,
            extra={
                "operation": operation_name,
                "duration_seconds": duration,
                "error_type": type(e).__name__,
                "stripe_error": str(e),
                **context_vars,
            },
        )
        raise UpstreamUnavailable(
            f"Stripe {operation_name} failed: {e.user_message or e}",
            details={"operation": operation_name},
        )
    else:
        duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"Completed Stripe operation: {operation_name}",
            extra={"operation": operation_name, "duration_seconds": duration, **context_vars},
        )


# ==================== CONFIGURATION ====================

@dataclass
class StripeConfig:
    secret_name: str
    api_key_override: Optional[str] = None
    max_network_retries: int = 2
    init_timeout: float = 10.0

    @classmethod
    def from_app_config(cls, config: Dict[str, Any]) -> "StripeConfig":
        return cls(
            secret_name=config.get("STRIPE_SECRET_NAME", "stripe-secret-key"),
            api_key_override=config.get("STRIPE_SECRET_KEY") or None,
            max_network_retries=config.get("STRIPE_MAX_RETRIES", 2),
            init_timeout=float(config.get("STRIPE_INIT_TIMEOUT_SECONDS", 10)),
        )


# ==================== GATEWAY ====================

class StripeGateway:
    """
    Thin wrapper over the Stripe SDK. Every method returns plain dicts and
    raises ``UpstreamUnavailable`` / ``NotFound`` instead of SDK errors.
    """

    def __init__(self, api_key: str):
        if not api_key:
            raise StripeMisconfiguredError("STRIPE_SECRET_KEY")
        self._api_key = api_key
        logger.info(
            "Stripe gateway initialized",
            extra={"api_key_prefix": api_key[:8] + "..."},
        )

    # ---------- customers ----------

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with stripe_operation_context("find_customer_by_email", email=email):
            result = stripe.Customer.list(email=email, limit=1, api_key=self._api_key)
        customers = to_plain(result).get("data", [])
        return customers[0] if customers else None

    def create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None,
                        name: Optional[str] = None) -> Dict[str, Any]:
        params = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        with stripe_operation_context("create_customer", email=email):
            customer = stripe.Customer.create(api_key=self._api_key, **params)
        return to_plain(customer)

    def update_customer(self, customer_id: str, **params) -> Dict[str, Any]:
        with stripe_operation_context("update_customer", customer_id=customer_id):
            customer = stripe.Customer.modify(customer_id, api_key=self._api_key, **params)
        return to_plain(customer)

    def retrieve_customer(self, customer_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        with stripe_operation_context("retrieve_customer", customer_id=customer_id):
            customer = stripe.Customer.retrieve(customer_id, expand=expand or [], api_key=self._api_key)
        return to_plain(customer)

    # ---------- subscriptions ----------

    def create_subscription(self, customer_id: str, price_id: str,
                            metadata: Optional[Dict[str, str]] = None,
                            promotion_code: Optional[str] = None,
                            idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
            "expand": ["latest_invoice.payment_intent"],
        }
        if promotion_code:
            params["discounts"] = [{"promotion_code": promotion_code}]
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        with stripe_operation_context("create_subscription", customer_id=customer_id, price_id=price_id):
            subscription = stripe.Subscription.create(api_key=self._api_key, **params)
        return to_plain(subscription)

    def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        with stripe_operation_context("update_subscription", subscription_id=subscription_id):
            subscription = stripe.Subscription.modify(subscription_id, api_key=self._api_key, **params)
        return to_plain(subscription)

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        return self.update_subscription(subscription_id, cancel_at_period_end=True)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with stripe_operation_context("cancel_subscription", subscription_id=subscription_id):
            subscription = stripe.Subscription.cancel(subscription_id, api_key=self._api_key)
        return to_plain(subscription)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with stripe_operation_context("retrieve_subscription", subscription_id=subscription_id):
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        return to_plain(subscription)

    def list_subscriptions(self, customer_id: str, status: str = "active", limit: int = 10) -> List[Dict[str, Any]]:
        with stripe_operation_context("list_subscriptions", customer_id=customer_id, status=status):
            result = stripe.Subscription.list(
                customer=customer_id, status=status, limit=limit, api_key=self._api_key
            )
        return to_plain(result).get("data", [])

    # ---------- payments ----------

    def create_payment_intent(self, amount: int, currency: str,
                              customer_id: Optional[str] = None,
                              metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        params = {
            "amount": amount,
            "currency": currency,
            "setup_future_usage": "off_session",
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        with stripe_operation_context("create_payment_intent", amount=amount, currency=currency):
            intent = stripe.PaymentIntent.create(api_key=self._api_key, **params)
        return to_plain(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        with stripe_operation_context("retrieve_payment_intent", payment_intent_id=payment_intent_id):
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key)
        return to_plain(intent)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Dict[str, Any]:
        with stripe_operation_context("attach_payment_method", customer_id=customer_id):
            method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id, api_key=self._api_key)
        return to_plain(method)

    def find_promotion_code(self, code: str) -> Optional[Dict[str, Any]]:
        with stripe_operation_context("find_promotion_code", code=code):
            result = stripe.PromotionCode.list(code=code, active=True, limit=1, api_key=self._api_key)
        codes = to_plain(result).get("data", [])
        return codes[0] if codes else None


# ==================== LIFECYCLE ====================

class GatewayInitializer:
    """
    Owns the one-time construction of the payment gateway client.

    The API key is resolved on a background thread as soon as ``start()`` is
    called; consumers call ``get()`` and block at most ``timeout`` seconds.
    Initialization failure or timeout surfaces as ``UpstreamUnavailable``.
    """

    def __init__(self, secret_provider: SecretProvider, config: StripeConfig,
                 factory: Callable[[str], Any] = StripeGateway):
        self._secret_provider = secret_provider
        self._config = config
        self._factory = factory
        self._future: Optional[Future] = None
        self._lock = threading.Lock()

    @classmethod
    def ready(cls, gateway: Any) -> "GatewayInitializer":
        """Initializer that is already resolved to ``gateway``."""
        initializer = cls(SecretProvider(), StripeConfig(secret_name=""))
        future = Future()
        future.set_result(gateway)
        initializer._future = future
        return initializer

    def start(self) -> Future:
        with self._lock:
            if self._future is None:
                self._future = Future()
                thread = threading.Thread(
                    target=self._initialize, name="stripe-gateway-init", daemon=True
                )
                thread.start()
            return self._future

    def _initialize(self):
        future = self._future
        if not future.set_running_or_notify_cancel():
            return
        try:
            api_key = self._config.api_key_override or self._secret_provider.get_secret(self._config.secret_name)
            if not api_key:
                raise StripeMisconfiguredError(self._config.secret_name)
            stripe.max_network_retries = self._config.max_network_retries
            future.set_result(self._factory(api_key))
        except Exception as e:
            logger.error("Failed to initialize Stripe gateway", exc_info=True)
            future.set_exception(e)

    def get(self, timeout: Optional[float] = None):
        future = self.start()
        wait = self._config.init_timeout if timeout is None else timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            raise UpstreamUnavailable(
                f"Payment gateway did not initialize within {wait} seconds",
                details={"component": "stripe"},
            )
        except Exception as e:
            raise UpstreamUnavailable(
                f"Payment gateway initialization failed: {e}",
                details={"component": "stripe"},
            )

    @property
    def is_ready(self) -> bool:
        return self._future is not None and self._future.done() and self._future.exception() is None
