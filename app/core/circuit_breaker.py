"""
Circuit breaker לשירותים החיצוניים: ספק המייל, WhatsApp ו-API סטטוס העסקאות.

רצף כישלונות פותח את המעגל, ומרגע זה שליחות נכשלות מיד עם
CircuitBreakerOpenError במקום לחכות ל-timeout של ספק שנפל. אחרי ה-cooldown
עוברת קריאת ניסיון אחת בכל פעם, ורצף הצלחות סוגר את המעגל.

דחייה של בקשה בודדת (4xx מהספק: נמען לא תקין, עסקה לא מוכרת) לא נספרת
ככישלון, כי השירות עצמו זמין.
"""
import inspect
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ParamSpec, TypeVar

from app.core.exceptions import CircuitBreakerOpenError, ExternalServiceException
from app.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# 4xx שכן מעידים על עומס או תקלה בצד הספק
_OUTAGE_CLIENT_CODES = frozenset({408, 429})


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerPolicy:
    failure_threshold: int = 5       # כישלונות רצופים עד פתיחה
    recovery_successes: int = 2      # הצלחות ב-half-open עד סגירה
    cooldown_seconds: float = 30.0   # זמן במצב פתוח לפני קריאת ניסיון


SERVICE_POLICIES: dict[str, BreakerPolicy] = {
    "email": BreakerPolicy(cooldown_seconds=60.0),
    "whatsapp": BreakerPolicy(),
    # סנכרון אצווה פונה ל-API פעם לכל עסקה, לכן הסף גבוה יותר
    "transaction_api": BreakerPolicy(failure_threshold=10),
}


def is_outage(error: BaseException) -> bool:
    """האם השגיאה מעידה שהשירות לא זמין (ולא שהבקשה הספציפית נדחתה)"""
    if isinstance(error, ExternalServiceException):
        status_code = error.details.get("status_code")
        if isinstance(status_code, int) and 400 <= status_code < 500:
            return status_code in _OUTAGE_CLIENT_CODES
    return True


class CircuitBreaker:
    """מעגל לשירות חיצוני אחד. מופע משותף לשירות דרך for_service()."""

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        policy: BreakerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.policy = policy or SERVICE_POLICIES.get(service_name, BreakerPolicy())
        self._clock = clock
        # threading.Lock ולא asyncio.Lock - משימות Celery רצות ב-event loops שונים
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self._recovery_successes = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @classmethod
    def for_service(cls, service_name: str) -> "CircuitBreaker":
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        """איפוס כל המעגלים (לבדיקות)"""
        with cls._registry_lock:
            cls._registry.clear()

    @classmethod
    def snapshot(cls) -> dict[str, dict[str, Any]]:
        """מצב כל המעגלים - לבדיקת מוכנות"""
        with cls._registry_lock:
            breakers = list(cls._registry.values())
        return {
            breaker.service_name: {
                "state": breaker.state.value,
                "consecutive_failures": breaker.consecutive_failures,
                "retry_after_seconds": round(breaker.retry_after(), 1),
            }
            for breaker in breakers
        }

    def retry_after(self) -> float:
        """שניות עד שתותר קריאת ניסיון (0 כשהמעגל לא פתוח)"""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.policy.cooldown_seconds - (self._clock() - self._opened_at))

    def _move_to(self, new_state: CircuitState) -> None:
        old_state, self.state = self.state, new_state
        self._recovery_successes = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self.consecutive_failures = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}': {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "consecutive_failures": self.consecutive_failures,
            },
        )

    def _acquire(self) -> bool:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def _on_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self.state == CircuitState.HALF_OPEN:
                self._recovery_successes += 1
                if self._recovery_successes >= self.policy.recovery_successes:
                    self._move_to(CircuitState.CLOSED)
            else:
                self.consecutive_failures = 0

    def _on_error(self, error: Exception) -> None:
        with self._lock:
            self._trial_in_flight = False
            if not is_outage(error):
                return

            self.consecutive_failures += 1
            if self.state == CircuitState.OPEN:
                return
            if (
                self.state == CircuitState.HALF_OPEN
                or self.consecutive_failures >= self.policy.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)
            else:
                logger.debug(
                    f"Circuit breaker '{self.service_name}' recorded failure",
                    extra_data={
                        "service": self.service_name,
                        "consecutive_failures": self.consecutive_failures,
                        "threshold": self.policy.failure_threshold,
                        "error": str(error),
                    },
                )

    async def execute(
        self,
        func: Callable[P, T | Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """
        הרצת קריאה לשירות דרך המעגל.

        Raises:
            CircuitBreakerOpenError: המעגל פתוח (או שקריאת ניסיון כבר רצה)
        """
        if not self._acquire():
            raise CircuitBreakerOpenError(self.service_name, round(self.retry_after(), 1))

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._on_error(e)
            raise

        self._on_success()
        return result
