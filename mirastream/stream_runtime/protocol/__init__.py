"""Wire protocol shared by the stream runtime and the client.

- **framing**: ``data: `` line framing (encode on the server, incremental decode on the client)
- **sequencing**: Reordering buffer releasing envelopes in sequence order
- **schema**: Schema registry, version compatibility, payload migration, extensions bag
- **patch**: JSON Patch apply and top-level diff for STATE_DELTA operations
- **producer**: Per-stream sequence counter and envelope factory
"""
