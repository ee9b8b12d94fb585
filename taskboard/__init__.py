# Task board sync core: ordering, moves, realtime reconciliation, activity trail
#
# Components:
#   schema.py     - Data model (Board, BoardList, Task, Member, ActivityEntry, ChangeEvent)
#   errors.py     - Error taxonomy (NotFound, PermissionDenied, TransientFailure, ...)
#   store.py      - SQLite persistence with per-board access control
#   channel.py    - Per-board change notifications
#   positions.py  - Ordering keys and sibling sort
#   service.py    - Async, actor-bound access to the store
#   view.py       - Local optimistic board cache
#   moves.py      - Move protocol and create-at-end
#   reconciler.py - Invalidate-and-refetch on change notifications
#   activity.py   - Fire-and-forget activity trail
#   session.py    - Per-board client entry points
#   config.py     - YAML configuration
