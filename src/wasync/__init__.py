"""
wasync — one-shot, idempotent import of WhatsApp chats (via the UAZAPI
gateway) into a Chatwoot PostgreSQL database.

The source API is only ever read.  Destination writes are conflict-safe
inserts plus a per-record repair path, so a pass can be re-run (or run
concurrently with another) without duplicating contacts, conversations
or messages.
"""
