"""
Factory Recorder - administration events of the enhanced escrow factory.

The factory reports resolver whitelisting, admin changes, emergency pauses,
swap metrics and post-interaction outcomes. None of these move an escrow
leg; SwapCompleted is the only one that touches the swap aggregate, through
the correlator.

State rows (resolver_whitelist, factory_admin) remember the position
(block number, log index) of the last event applied to them and ignore
anything at or before it, so a redelivered event never rolls them back.
History rows are keyed by event and inserted once.
"""

import logging
from typing import Dict, Optional, Type, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core import AnomalyKind
from ..escrow import events as ev
from ..store.database import insert_ignore
from ..store.models import (
    EmergencyPause as EmergencyPauseRow,
    FactoryAdmin,
    FactoryMetrics,
    InteractionTracking,
    ResolverSuspension,
    ResolverWhitelist,
    SwapMetrics,
)
from .correlator import MergeResult, SwapCorrelator

log = logging.getLogger(__name__)

StateRow = Union[ResolverWhitelist, FactoryAdmin]

METRICS_INITIATED = "initiated"
METRICS_COMPLETED = "completed"
INTERACTION_EXECUTED = "executed"
INTERACTION_FAILED = "failed"


def account_id(chain_id: int, account: str) -> str:
    """Key of a resolver or admin on one chain."""
    return f"{chain_id}-{account.lower()}"


def log_id(event: ev.FactoryEvent) -> str:
    """Key of a history row: one log."""
    return f"{event.chain_id}-{event.transaction_hash}-{event.log_index}"


def _position(event: ev.FactoryEvent) -> Dict:
    return {
        "block_number": event.block_number,
        "log_index": event.log_index,
        "transaction_hash": event.transaction_hash,
    }


class FactoryRecorder:
    """
    Applies factory administration events inside the caller's transaction.

    Every method returns a MergeResult: `changed` when a row moved,
    `duplicate` for a redelivered event, `anomaly` when the event refers to
    an account or order the indexer has never seen.
    """

    def apply(self, session: Session, event: ev.FactoryEvent, correlator: SwapCorrelator) -> MergeResult:
        if isinstance(event, (ev.ResolverWhitelisted, ev.ResolverAdded)):
            return self.whitelist_resolver(session, event)
        if isinstance(event, ev.ResolverRemoved):
            return self._update_resolver(session, event, correlator, is_whitelisted=False, is_active=False)
        if isinstance(event, ev.ResolverSuspended):
            return self.suspend_resolver(session, event, correlator)
        if isinstance(event, ev.ResolverReactivated):
            return self._update_resolver(session, event, correlator, is_active=True, suspended_until=None)
        if isinstance(event, ev.AdminAdded):
            return self.add_admin(session, event)
        if isinstance(event, ev.AdminRemoved):
            return self.remove_admin(session, event, correlator)
        if isinstance(event, ev.EmergencyPause):
            return self.record_pause(session, event)
        if isinstance(event, ev.SwapInitiated):
            return self.record_swap_initiated(session, event)
        if isinstance(event, ev.SwapCompleted):
            return self.record_swap_completed(session, event, correlator)
        if isinstance(event, (ev.InteractionExecuted, ev.InteractionFailed)):
            return self.record_interaction(session, event)
        if isinstance(event, ev.MetricsUpdated):
            return self.record_metrics(session, event)
        raise TypeError(f"Unhandled factory event: {type(event).__name__}")

    # =========================================================================
    # Row helpers
    # =========================================================================

    @staticmethod
    def _lock(session: Session, model: Type[StateRow], key: str) -> Optional[StateRow]:
        stmt = (
            select(model)
            .where(model.id == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _is_stale(row: StateRow, event: ev.FactoryEvent) -> bool:
        return (event.block_number, event.log_index) <= (row.block_number, row.log_index)

    @staticmethod
    def _advance(row: StateRow, event: ev.FactoryEvent) -> None:
        row.block_number = event.block_number
        row.log_index = event.log_index
        row.transaction_hash = event.transaction_hash

    @staticmethod
    def _unknown_account(session: Session, correlator: SwapCorrelator, event: ev.FactoryEvent,
                         account: str) -> MergeResult:
        anomaly = correlator.record_anomaly(
            session, AnomalyKind.UNKNOWN_ACCOUNT,
            chain_id=event.chain_id,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            detail=f"{event.kind} for {account}, never added",
        )
        return MergeResult(anomaly=anomaly)

    # =========================================================================
    # Resolvers
    # =========================================================================

    def whitelist_resolver(self, session: Session,
                           event: Union[ev.ResolverWhitelisted, ev.ResolverAdded]) -> MergeResult:
        """ResolverWhitelisted / ResolverAdded: create or re-whitelist the resolver."""
        added_by = event.added_by if isinstance(event, ev.ResolverAdded) else event.transaction_from
        key = account_id(event.chain_id, event.resolver)
        created = insert_ignore(session, ResolverWhitelist, {
            "id": key,
            "chain_id": event.chain_id,
            "resolver": event.resolver,
            "is_whitelisted": True,
            "is_active": True,
            "added_at": event.block_timestamp,
            "added_by": added_by,
            "suspended_until": None,
            "total_transactions": 0,
            "failed_transactions": 0,
            "last_activity_block": None,
            **_position(event),
        })
        if created:
            log.info(f"Resolver {event.resolver} whitelisted on chain {event.chain_id}")
            return MergeResult(changed=True)

        row = self._lock(session, ResolverWhitelist, key)
        if self._is_stale(row, event):
            return MergeResult(duplicate=True)
        row.is_whitelisted = True
        row.added_at = event.block_timestamp
        row.added_by = added_by
        if isinstance(event, ev.ResolverAdded):
            row.is_active = True
        self._advance(row, event)
        log.info(f"Resolver {event.resolver} re-whitelisted on chain {event.chain_id}")
        return MergeResult(changed=True)

    def suspend_resolver(self, session: Session, event: ev.ResolverSuspended,
                         correlator: SwapCorrelator) -> MergeResult:
        """ResolverSuspended: history row, then deactivate until `until`."""
        inserted = insert_ignore(session, ResolverSuspension, {
            "id": f"{account_id(event.chain_id, event.resolver)}-{event.transaction_hash}-{event.log_index}",
            "chain_id": event.chain_id,
            "resolver": event.resolver,
            "suspended_until": event.until,
            "reason": event.reason,
            "block_number": event.block_number,
            "block_timestamp": event.block_timestamp,
            "transaction_hash": event.transaction_hash,
        })
        if inserted:
            log.warning(f"Resolver {event.resolver} suspended on chain {event.chain_id} "
                        f"until {event.until}: {event.reason or '-'}")
        return self._update_resolver(session, event, correlator, is_active=False, suspended_until=event.until)

    def _update_resolver(self, session: Session, event: ev.FactoryEvent, correlator: SwapCorrelator,
                         **changes) -> MergeResult:
        row = self._lock(session, ResolverWhitelist, account_id(event.chain_id, event.resolver))
        if row is None:
            return self._unknown_account(session, correlator, event, f"resolver {event.resolver}")
        if self._is_stale(row, event):
            return MergeResult(duplicate=True)
        for name, value in changes.items():
            setattr(row, name, value)
        self._advance(row, event)
        log.info(f"{event.kind}: resolver {event.resolver} on chain {event.chain_id}")
        return MergeResult(changed=True)

    def _bump_resolver(self, session: Session, chain_id: int, resolver: Optional[str],
                       block_number: int, failed: bool = False) -> None:
        """Count a transaction against a whitelisted resolver, if it is one."""
        if resolver is None:
            return
        row = self._lock(session, ResolverWhitelist, account_id(chain_id, resolver))
        if row is None:
            return
        if failed:
            row.failed_transactions += 1
            return
        row.total_transactions += 1
        if row.last_activity_block is None or block_number > row.last_activity_block:
            row.last_activity_block = block_number

    # =========================================================================
    # Admins and pause
    # =========================================================================

    def add_admin(self, session: Session, event: ev.AdminAdded) -> MergeResult:
        key = account_id(event.chain_id, event.admin)
        created = insert_ignore(session, FactoryAdmin, {
            "id": key,
            "chain_id": event.chain_id,
            "admin": event.admin,
            "is_active": True,
            "added_at": event.block_timestamp,
            "removed_at": None,
            **_position(event),
        })
        if not created:
            row = self._lock(session, FactoryAdmin, key)
            if self._is_stale(row, event):
                return MergeResult(duplicate=True)
            row.is_active = True
            row.added_at = event.block_timestamp
            row.removed_at = None
            self._advance(row, event)
        log.info(f"Admin {event.admin} added on chain {event.chain_id}")
        return MergeResult(changed=True)

    def remove_admin(self, session: Session, event: ev.AdminRemoved,
                     correlator: SwapCorrelator) -> MergeResult:
        row = self._lock(session, FactoryAdmin, account_id(event.chain_id, event.admin))
        if row is None:
            return self._unknown_account(session, correlator, event, f"admin {event.admin}")
        if self._is_stale(row, event):
            return MergeResult(duplicate=True)
        row.is_active = False
        row.removed_at = event.block_timestamp
        self._advance(row, event)
        log.info(f"Admin {event.admin} removed on chain {event.chain_id}")
        return MergeResult(changed=True)

    def record_pause(self, session: Session, event: ev.EmergencyPause) -> MergeResult:
        inserted = insert_ignore(session, EmergencyPauseRow, {
            "id": log_id(event),
            "chain_id": event.chain_id,
            "is_paused": event.paused,
            "paused_at": event.block_timestamp,
            **_position(event),
        })
        if inserted:
            log.warning(f"Factory on chain {event.chain_id} {'paused' if event.paused else 'unpaused'} "
                        f"at block {event.block_number}")
        return MergeResult(changed=inserted, duplicate=not inserted)

    def is_paused(self, session: Session, chain_id: int) -> bool:
        """Latest pause state of the factory on `chain_id` (False if never paused)."""
        stmt = (
            select(EmergencyPauseRow.is_paused)
            .where(EmergencyPauseRow.chain_id == chain_id)
            .order_by(EmergencyPauseRow.block_number.desc(), EmergencyPauseRow.log_index.desc())
            .limit(1)
        )
        return bool(session.execute(stmt).scalar_one_or_none())

    # =========================================================================
    # Swap metrics
    # =========================================================================

    def record_swap_initiated(self, session: Session, event: ev.SwapInitiated) -> MergeResult:
        inserted = insert_ignore(session, SwapMetrics, {
            "id": f"{event.chain_id}-initiated-{event.transaction_hash}-{event.log_index}",
            "chain_id": event.chain_id,
            "order_hash": None,
            "escrow_src": event.escrow_src,
            "maker": event.maker,
            "resolver": event.resolver,
            "volume": event.volume,
            "src_chain_id": event.src_chain_id,
            "dst_chain_id": event.dst_chain_id,
            "status": METRICS_INITIATED,
            "block_number": event.block_number,
            "block_timestamp": event.block_timestamp,
            "transaction_hash": event.transaction_hash,
        })
        if not inserted:
            return MergeResult(duplicate=True)
        self._bump_resolver(session, event.chain_id, event.resolver, event.block_number)
        log.info(f"Swap initiated by resolver {event.resolver} from escrow {event.escrow_src} "
                 f"on chain {event.chain_id}, volume {event.volume}")
        return MergeResult(changed=True)

    def record_swap_completed(self, session: Session, event: ev.SwapCompleted,
                              correlator: SwapCorrelator) -> MergeResult:
        """SwapCompleted: metrics row per order, then complete the aggregate."""
        key = f"{event.chain_id}-{event.order_hash}"
        completion = {
            "completion_time": event.completion_time,
            "gas_used": event.gas_used,
            "status": METRICS_COMPLETED,
            "block_number": event.block_number,
            "block_timestamp": event.block_timestamp,
            "transaction_hash": event.transaction_hash,
        }
        if not insert_ignore(session, SwapMetrics, {
            "id": key,
            "chain_id": event.chain_id,
            "order_hash": event.order_hash,
            "resolver": event.resolver,
            **completion,
        }):
            row = session.get(SwapMetrics, key, with_for_update=True, populate_existing=True)
            for name, value in completion.items():
                setattr(row, name, value)
        return correlator.apply_swap_completed(session, event)

    # =========================================================================
    # Interactions and global metrics
    # =========================================================================

    def record_interaction(self, session: Session,
                           event: Union[ev.InteractionExecuted, ev.InteractionFailed]) -> MergeResult:
        failed = isinstance(event, ev.InteractionFailed)
        if failed:
            values = {
                "id": log_id(event),
                "interaction_hash": None,
                "status": INTERACTION_FAILED,
                "failure_reason": event.reason,
                "executed_at": event.block_timestamp,
            }
        else:
            values = {
                "id": f"{event.chain_id}-{event.interaction_hash}",
                "interaction_hash": event.interaction_hash,
                "status": INTERACTION_EXECUTED,
                "failure_reason": None,
                "executed_at": event.timestamp,
            }
        inserted = insert_ignore(session, InteractionTracking, {
            "chain_id": event.chain_id,
            "order_maker": event.order_maker,
            "interaction_target": event.interaction_target,
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
            **values,
        })
        if not inserted:
            return MergeResult(duplicate=True)
        if failed:
            # Charged to the sender: the resolver that filled the order
            self._bump_resolver(session, event.chain_id, event.transaction_from, event.block_number, failed=True)
            log.warning(f"Interaction with {event.interaction_target} failed on chain {event.chain_id}: "
                        f"{event.reason or '-'}")
        return MergeResult(changed=True)

    def record_metrics(self, session: Session, event: ev.MetricsUpdated) -> MergeResult:
        inserted = insert_ignore(session, FactoryMetrics, {
            "id": log_id(event),
            "chain_id": event.chain_id,
            "total_volume": event.total_volume,
            "success_rate": event.success_rate,
            "avg_completion_time": event.avg_completion_time,
            "block_number": event.block_number,
            "block_timestamp": event.block_timestamp,
            "transaction_hash": event.transaction_hash,
        })
        return MergeResult(changed=inserted, duplicate=not inserted)
