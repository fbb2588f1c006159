"""
Utility modules for speechflow.

    - timeit.py: elapsed-time measurement for log fields
"""
