"""Property-based tests for the retention engine.

Properties:
- Creation gating: a snapshot is taken iff the generation changed
- Floor invariant: at least min(min_count, total) snapshots survive
- Oldest-first eviction when the floor would be breached
- expiration_days == 0 deletes exactly the oldest total - min_count
- No delete call when there is nothing to delete
- Agreement with the set-difference formulation of the same policy
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import List

from hypothesis import given, settings, assume, HealthCheck
from hypothesis import strategies as st

from btrsnap.index import Snapshot
from btrsnap.retention import (
    RetentionEngine,
    RetentionPolicy,
    Subvolume,
    select_deletions,
)

from helpers import FakeStore, make_snapshots


NOW = datetime(2025, 6, 15, 12, 0, 0)
SUBVOL = Path("/pool/share")

# Distinct snapshot ages in hours, up to ~60 days back
ages_strategy = st.lists(
    st.integers(min_value=0, max_value=60 * 24),
    unique=True,
    max_size=40,
)
min_count_strategy = st.integers(min_value=0, max_value=50)
expiration_strategy = st.integers(min_value=0, max_value=60)


def build(ages_hours: List[int]) -> List[Snapshot]:
    return make_snapshots([h / 24 for h in ages_hours], NOW)


def expired_after(snapshots: List[Snapshot], expiration_days: int) -> List[Snapshot]:
    if expiration_days == 0:
        return list(snapshots)
    cutoff = NOW - timedelta(days=expiration_days)
    return [s for s in snapshots if s.modified < cutoff]


def select_by_difference(
    snapshots: List[Snapshot],
    expired: List[Snapshot],
    min_count: int,
) -> List[Snapshot]:
    """The set-difference formulation: expired minus the newest min_count."""
    preserved = {s.path for s in snapshots[:min_count]}
    return [s for s in expired if s.path not in preserved]


class TestFloorInvariantProperty:
    """Surviving count is never below min(min_count, total)."""
    
    @given(
        ages=ages_strategy,
        min_count=min_count_strategy,
        expiration_days=expiration_strategy,
    )
    def test_floor_invariant(self, ages, min_count, expiration_days):
        snapshots = build(ages)
        expired = expired_after(snapshots, expiration_days)
        
        to_delete = select_deletions(snapshots, expired, min_count)
        
        survivors = len(snapshots) - len(to_delete)
        assert survivors >= min(min_count, len(snapshots))
        assert survivors == max(len(snapshots) - len(expired), min(min_count, len(snapshots)))
    
    @given(
        ages=ages_strategy,
        min_count=min_count_strategy,
        expiration_days=expiration_strategy,
    )
    def test_deletes_only_expired_outside_floor(self, ages, min_count, expiration_days):
        snapshots = build(ages)
        expired = expired_after(snapshots, expiration_days)
        
        to_delete = select_deletions(snapshots, expired, min_count)
        
        expired_paths = {s.path for s in expired}
        newest = {s.path for s in snapshots[:min_count]}
        for snapshot in to_delete:
            assert snapshot.path in expired_paths
            assert snapshot.path not in newest


class TestOldestFirstEvictionProperty:
    """Under floor pressure, the oldest expired snapshots go first."""
    
    @given(
        ages=ages_strategy,
        min_count=min_count_strategy,
        expiration_days=expiration_strategy,
    )
    def test_oldest_first(self, ages, min_count, expiration_days):
        snapshots = build(ages)
        expired = expired_after(snapshots, expiration_days)
        assume(min_count + len(expired) > len(snapshots))
        
        to_delete = select_deletions(snapshots, expired, min_count)
        
        allowed = max(len(snapshots) - min_count, 0)
        assert len(to_delete) == allowed
        # What's deleted is exactly the oldest tail of the expired list
        assert to_delete == (expired[-allowed:] if allowed else [])
        if to_delete:
            spared = expired[: len(expired) - allowed]
            assert all(s.timestamp > to_delete[0].timestamp for s in spared)


class TestExpirationDisabledProperty:
    """expiration_days == 0: only min_count decides, regardless of age."""
    
    @given(ages=ages_strategy, min_count=min_count_strategy)
    def test_deletes_oldest_total_minus_min_count(self, ages, min_count):
        snapshots = build(ages)
        expired = expired_after(snapshots, 0)
        
        to_delete = select_deletions(snapshots, expired, min_count)
        
        assert to_delete == snapshots[min_count:]
        assert len(to_delete) == max(len(snapshots) - min_count, 0)


class TestFormulationAgreementProperty:
    """Count-based and set-difference selection agree on age-ordered input."""
    
    @given(
        ages=ages_strategy,
        min_count=min_count_strategy,
        expiration_days=expiration_strategy,
    )
    def test_agreement(self, ages, min_count, expiration_days):
        snapshots = build(ages)
        expired = expired_after(snapshots, expiration_days)
        
        assert select_deletions(snapshots, expired, min_count) == select_by_difference(
            snapshots, expired, min_count
        )


class TestEngineProperties:
    """Properties of RetentionEngine against an in-memory store."""
    
    @given(
        generation=st.integers(min_value=1, max_value=10_000),
        latest_generation=st.integers(min_value=1, max_value=10_000),
    )
    def test_creation_gating(self, generation, latest_generation):
        store = FakeStore(lambda: NOW)
        store.add_subvolume(SUBVOL, generation=generation)
        store.add_snapshot(
            SUBVOL, NOW - timedelta(hours=1), generation=latest_generation
        )
        engine = RetentionEngine(store, clock=lambda: NOW)
        
        decision = engine.plan_creation(Subvolume(SUBVOL))
        
        assert decision.should_create == (generation != latest_generation)
    
    @given(
        ages=st.lists(
            st.integers(min_value=1, max_value=60), unique=True, max_size=20
        ),
        min_count=st.integers(min_value=0, max_value=25),
        expiration_days=expiration_strategy,
    )
    @settings(suppress_health_check=[HealthCheck.too_slow])
    def test_apply_issues_delete_only_when_needed(self, ages, min_count, expiration_days):
        store = FakeStore(lambda: NOW)
        store.add_subvolume(SUBVOL, generation=3)
        for days in ages:
            store.add_snapshot(SUBVOL, NOW - timedelta(days=days), generation=3)
        engine = RetentionEngine(store, clock=lambda: NOW)
        
        result = engine.apply(
            Subvolume(SUBVOL), RetentionPolicy(expiration_days, min_count)
        )
        
        delete_calls = [c for c in store.calls if c[0] == "delete_snapshots"]
        if result.deleted_snapshots:
            assert len(delete_calls) == 1
            assert list(delete_calls[0][1]) == result.deleted_snapshots
        else:
            assert delete_calls == []
        assert len(result.kept_snapshots) >= min(min_count, len(ages))
