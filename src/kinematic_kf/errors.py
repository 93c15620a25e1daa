"""Exceptions raised by kinematic-kf.

All of them derive from :class:`KalmanError`. They also inherit from the closest builtin
exception so that callers can catch them generically (``ValueError``, ``RuntimeError``...).
"""


class KalmanError(Exception):
    """Base class of kinematic-kf errors."""


class ConfigurationError(KalmanError, ValueError):
    """Invalid filter configuration (unknown model, negative noise, unstable correlation, ...).

    The estimator keeps its previous configuration when this is raised.
    """


class UsageError(KalmanError, RuntimeError):
    """The estimator is used before being configured, or with a badly shaped measure."""


class NumericalError(KalmanError, ArithmeticError):
    """The innovation covariance cannot be factorized (singular or not positive definite).

    It comes from a degenerate configuration (e.g. zero measurement noise with a collapsed state
    covariance) and retrying with the same inputs reproduces it: reconfigure instead.
    """
