"""
Per-user wiring of the offline collaborators.

A FieldSession owns one LocalCacheStore namespace, the remote store and
the SyncManager that moves data between them.  Sessions are built on
demand and handed to whatever needs them; there is no module-level
instance.
"""
from dataclasses import dataclass

from .cache_store import LocalCacheStore
from .remote import RemoteStore, get_remote_store
from .sync import SyncManager


@dataclass
class FieldSession:
    store: LocalCacheStore
    remote: RemoteStore
    sync: SyncManager

    @classmethod
    def build(cls, namespace, remote=None, online=True, cache=None):
        store  = LocalCacheStore(namespace, cache=cache)
        remote = remote or get_remote_store()
        return cls(store=store, remote=remote, sync=SyncManager(store, remote, online=online))


def session_namespace(user):
    if user is None or not getattr(user, 'is_authenticated', False):
        return 'anonymous'
    return f'user-{user.pk}'


def get_field_session(request, remote=None):
    """
    Returns the FieldSession for the requesting user, cached on the
    request so every call within one request shares it.
    """
    session = getattr(request, '_waterbill_session', None)
    if session is None:
        online  = request.session.get('waterbill_online', True) if hasattr(request, 'session') else True
        session = FieldSession.build(session_namespace(getattr(request, 'user', None)),
                                     remote=remote, online=online)
        request._waterbill_session = session
    return session
