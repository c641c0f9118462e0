"""
ListSync Reconciliation Engine Test Suite

Test Files:
1. test_reconciler_load.py - Initial load, reload coalescing, rows that survive a reload
2. test_reconciler_mutations.py - Optimistic add/update/toggle/remove/reorder/clear_done
3. test_reconciler_remote.py - Inbound change events, echo suppression, guards, writes racing ours
4. test_reconciler_scenarios.py - Several clients on one list, shuffled delivery, reconnects
"""
