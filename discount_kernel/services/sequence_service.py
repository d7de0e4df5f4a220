"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for audit events and
    allocation numbers.  Uses the ``sequence_counters`` table with
    row-level locking (``SELECT ... FOR UPDATE``) so concurrent callers
    never receive the same value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService and AllocationService.

Invariants enforced:
    - Sequences are strictly monotonic per name.  Aggregate max+1 is never
      used; the locked counter row is the only source of truth.
    - The increment is transactional: a rollback returns the value.

Failure modes:
    - IntegrityError on a concurrent first-use race (handled via savepoint
      rollback and re-read).
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from discount_kernel.logging_config import get_logger
from discount_kernel.models.audit_event import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Transactional named sequences.

    Usage:
        seq = SequenceService(session).next_value(SequenceService.AUDIT_EVENT)
    """

    AUDIT_EVENT = "audit_event"
    ALLOCATION_NUMBER = "allocation_number"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock, increment and return the named counter.

        Postconditions:
            - Returns a value > 0 strictly greater than any previously
              committed value for ``sequence_name``.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use; another transaction may be creating it too
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never used."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
