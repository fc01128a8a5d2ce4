"""
linksync - association synchronization worker for the expense tracker.

Budgets, categories and payment methods ("containers") each keep a per-user
set of expense IDs ("members"). Upstream services never write those sets
directly; they publish link events, one topic per container kind, and this
worker folds them into the stored containers.

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │ Expense svc  │────▶│ Kafka topic  │────▶│  LinkConsumer    │
    │ (producer)   │     │ per kind     │     │  (poll + ack)    │
    └──────────────┘     └──────────────┘     └────────┬─────────┘
                                                       │ batch
                                                       ▼
                                              ┌──────────────────┐
                                              │ BatchLinkEngine  │
                                              │ parse → load →   │
                                              │ mutate → persist │
                                              └────────┬─────────┘
                                                       │ bulk save (versioned)
                                                       ▼
                                              ┌──────────────────┐
                                              │ ContainerStore   │
                                              │ (SQLite)         │
                                              └──────────────────┘

Invariants:
    - A batch is acknowledged only after its containers are durably saved
    - Events are applied in arrival order, never regrouped per container
    - Concurrent writers are detected by the container version, never by locks
    - A user key with an empty member set is never stored

How to change safely:
    - New event fields must be optional in LinkEvent.from_dict
    - Keep the merge rule in mutator.merge_ids shared by both linking paths
    - Test conflict handling with InMemoryContainerStore.add_before_save_hook
"""

from ._version import __version__

__all__ = ["__version__"]
