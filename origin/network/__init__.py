"""Byte pool, length-prefixed framing, TCP transport and message processors."""