"""
Strategy instance lifecycle state machine and runtime store.
"""
