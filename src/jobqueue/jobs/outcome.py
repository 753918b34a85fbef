from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True, slots=True)
class Completed:
    elapsed_s: float
    result: object = None


@dataclass(frozen=True, slots=True)
class Failed:
    error: str
    stack_trace: str | None = None


@dataclass(frozen=True, slots=True)
class TimedOut:
    error: str
    stack_trace: str | None = None


Outcome = Union[Completed, Failed, TimedOut]


@dataclass(frozen=True, slots=True)
class Done:
    pass


@dataclass(frozen=True, slots=True)
class Retry:
    delay_s: float


@dataclass(frozen=True, slots=True)
class DeadLetter:
    reason: str


Decision = Union[Done, Retry, DeadLetter]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """
    Retry delay policy.

    - fixed: every retry waits the job's retry delay
    - exponential: base * 2**(attempts-1), capped at `cap_s`
    """

    kind: str = "fixed"
    cap_s: float = 3600.0

    def delay_for(self, base_delay_s: float, attempts: int) -> float:
        base = max(0.0, float(base_delay_s))
        if str(self.kind).lower() != "exponential":
            return base
        att = max(1, int(attempts))
        return float(min(float(self.cap_s), base * (2 ** (att - 1))))


def decide(
    outcome: Outcome,
    *,
    attempts: int,
    max_retries: int,
    should_retry: bool,
    retry_delay_s: float,
    backoff: BackoffPolicy | None = None,
) -> Decision:
    """
    Pure retry decision for one finished attempt.

    `max_retries` bounds the total number of attempts, so a job is retried
    while `should_retry and attempts < max_retries`:
      - max_retries=0 or 1: the first failure dead-letters
      - max_retries=3: the third failure dead-letters
    """
    if isinstance(outcome, Completed):
        return Done()
    if not should_retry:
        return DeadLetter(reason="retries disabled")
    if int(attempts) < int(max_retries):
        policy = backoff or BackoffPolicy()
        return Retry(delay_s=policy.delay_for(retry_delay_s, attempts))
    kind = "timed out" if isinstance(outcome, TimedOut) else "failed"
    return DeadLetter(reason=f"{kind} after {int(attempts)} attempt(s)")
