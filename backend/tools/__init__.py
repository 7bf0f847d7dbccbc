from . import dosing, adherence

__all__ = [
    'dosing',
    'adherence',
]
