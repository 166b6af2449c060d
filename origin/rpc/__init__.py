"""RPC protocol records and codec, client and server."""