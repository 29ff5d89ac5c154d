"""Storage package"""

from .state_store import AdminState, JobStateStore
from .identity_store import IdentityStore

__all__ = ['AdminState', 'JobStateStore', 'IdentityStore']
