# cronpipe/queue/backoff.py


def compute_backoff(base: float, redelivery: int) -> float:
    """
    Exponential backoff: base * 2 ** (redelivery - 1) seconds.
    redelivery = 1 for the first retry after the initial delivery failed.
    """
    if redelivery <= 0:
        return 0.0
    return base * (2 ** (redelivery - 1))
