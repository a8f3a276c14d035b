"""
Batched model fitting for per-gene count models.
"""

from rlognorm.models.nb_ridge import NBRidgeFit, fit_nb_ridge, nb_deviance

__all__ = [
    'NBRidgeFit',
    'fit_nb_ridge',
    'nb_deviance',
]
