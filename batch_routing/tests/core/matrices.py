"""
Hand-built distance matrices with known route totals.
"""
import numpy as np


def two_order_matrix():
    """
    Indices: 0 driver, 1/2 pickups of orders 0/1, 3/4 deliveries of orders 0/1.

    Sequence [0, 1] travels 1 + 2 + 6 + 1 = 10 km.
    Sequence [1, 0] travels 5 + 2 + 4 + 1 = 12 km.
    """
    m = np.zeros((5, 5))
    legs = {
        (0, 1): 1.0, (0, 2): 5.0, (0, 3): 7.0, (0, 4): 8.0,
        (1, 2): 2.0, (1, 3): 3.0, (1, 4): 4.0,
        (2, 3): 6.0, (2, 4): 2.0,
        (3, 4): 1.0,
    }
    for (i, j), d in legs.items():
        m[i, j] = d
        m[j, i] = d
    return m
