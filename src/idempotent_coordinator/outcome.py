"""Result contract between the coordinator and the operations it runs.

An operation wrapped by ``Coordinator.execute`` returns ``Ok(value)`` on
success or ``Err(reason)`` on a domain failure. Raising an exception is
reserved for unexpected faults: the coordinator releases the claim and
re-raises.

Examples:
    >>> async def create_charge() -> Outcome:
    ...     response = await client.post("/v1/charges", json={"amount": 1000})
    ...     if response.is_error:
    ...         return Err({"status": response.status_code})
    ...     return Ok(response.json())
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Ok:
    """Successful outcome carrying the operation's value."""

    value: Any = None

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying the operation's error reason."""

    error: Any

    @property
    def is_ok(self) -> bool:
        return False


Outcome = Ok | Err
