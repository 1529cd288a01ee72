"""Tailscale Serve Preserve (TSP).

Keeps Tailscale Serve routes alive across container updates on a Docker or
TrueNAS Scale host:
 - snapshot the active serve routes before anything recreates containers
 - run Watchtower once and/or upgrade TrueNAS apps one at a time
 - repair the usual post-update breakage (looping init containers, crashed
   or never-started containers, missing port bindings, apps stuck deploying)
 - replay the snapshot against the (possibly recreated) proxy container and
   verify every route
"""

__version__ = "0.1.0"
