"""
Unit tests for the association mutator.
"""

from worker.linksync.linking.events import LinkAction, LinkEvent
from worker.linksync.linking.mutator import apply_event, apply_events, merge_ids
from worker.linksync.linking.store import Container


def _event(container_id, member_id, action=LinkAction.ADD, user_id=1):
    return LinkEvent(user_id=user_id, container_id=container_id, member_id=member_id, action=action)


class TestMergeIds:
    """Tests for merge_ids."""

    def test_add_to_none(self):
        assert merge_ids(None, 5, LinkAction.ADD) == {5}

    def test_add_is_idempotent(self):
        assert merge_ids({5}, 5, LinkAction.ADD) == {5}

    def test_update_merges_like_add(self):
        assert merge_ids({1}, 2, LinkAction.UPDATE) == {1, 2}

    def test_remove_absent_is_noop(self):
        assert merge_ids({1}, 2, LinkAction.REMOVE) == {1}

    def test_returns_new_set(self):
        current = {1}
        merged = merge_ids(current, 2, LinkAction.ADD)

        assert current == {1}
        assert merged is not current


class TestApplyEvent:
    """Tests for apply_event and apply_events."""

    def test_missing_container_skipped(self):
        containers = {5: Container(container_id=5)}

        assert apply_event(containers, _event(6, 100)) is False
        assert containers[5].associations == {}

    def test_none_associations_initialized(self):
        containers = {5: Container(container_id=5, associations=None)}

        apply_event(containers, _event(5, 100))

        assert containers[5].associations == {1: {100}}

    def test_emptied_user_removed(self):
        containers = {5: Container(container_id=5, associations={1: {100}, 2: {200}})}

        apply_event(containers, _event(5, 100, LinkAction.REMOVE))

        assert containers[5].associations == {2: {200}}

    def test_remove_for_unknown_user_stores_nothing(self):
        containers = {5: Container(container_id=5)}

        apply_event(containers, _event(5, 100, LinkAction.REMOVE, user_id=9))

        assert 9 not in containers[5].associations

    def test_order_matters(self):
        add_then_remove = {5: Container(container_id=5)}
        remove_then_add = {5: Container(container_id=5)}

        apply_events(add_then_remove, [_event(5, 100), _event(5, 100, LinkAction.REMOVE)])
        apply_events(remove_then_add, [_event(5, 100, LinkAction.REMOVE), _event(5, 100)])

        assert add_then_remove[5].members_for(1) == frozenset()
        assert remove_then_add[5].members_for(1) == frozenset({100})

    def test_apply_events_counts_hits(self):
        containers = {5: Container(container_id=5)}

        applied = apply_events(containers, [_event(5, 1), _event(6, 2), _event(5, 3)])

        assert applied == 2
        assert containers[5].members_for(1) == frozenset({1, 3})

    def test_users_are_independent(self):
        containers = {5: Container(container_id=5)}

        apply_events(containers, [_event(5, 100, user_id=1), _event(5, 100, user_id=2)])
        apply_event(containers, _event(5, 100, LinkAction.REMOVE, user_id=1))

        assert containers[5].associations == {2: {100}}
