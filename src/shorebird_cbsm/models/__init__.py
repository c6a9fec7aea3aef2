from shorebird_cbsm.models.families import resolve_family
from shorebird_cbsm.models.gam import EffectGAM
from shorebird_cbsm.models.terms import Fixed, RandomIntercept, Smooth, TensorSmooth

__all__ = ['EffectGAM', 'Fixed', 'RandomIntercept', 'Smooth', 'TensorSmooth', 'resolve_family']
