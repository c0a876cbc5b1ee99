"""OneDrive Navigator (ODNAV) - Session-aware OneDrive folder browser."""

__version__ = '0.1.0'
__author__ = 'Marlo Bell'
__license__ = 'MIT'

from .config import Config
from .session import SessionController, SessionState, get_session_controller
from .token_broker import TokenBroker
from .navigator import RemoteFolderNavigator
from .diagnostics import Diagnostics

__all__ = [
    'Config', 'SessionController', 'SessionState', 'get_session_controller',
    'TokenBroker', 'RemoteFolderNavigator', 'Diagnostics',
]
