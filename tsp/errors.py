from __future__ import annotations


class FatalError(Exception):
    """A precondition failed; the command stops and exits 1."""


class StateDirMissing(FatalError):
    pass


class NoControlPlane(FatalError):
    pass


class ServiceNotFound(FatalError):
    pass


class ServiceNotReady(FatalError):
    pass


class NothingToRestore(FatalError):
    pass
