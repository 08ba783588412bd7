# Board system: shared task columns with stable ordering and live sync
#
# Components:
#   schema.py          - Data model (Task, TaskCategory, Board, BoardMember, Invite)
#   ordering.py        - Pure re-indexing engine (insert, move, drop, archive, delete)
#   projection.py      - Board view: columns plus archive grouped by day
#   docstore.py        - Document store interface and in-memory backend
#   store.py           - SQLite document store
#   reconcile.py       - Optimistic edits, batched writes, resync on failure
#   members.py         - Membership checks and invite tokens
#   identity.py        - Name + lucky number sign-in
#   config.py          - YAML configuration
#   telegram_bridge.py - Board commands and summaries for the Telegram bot
