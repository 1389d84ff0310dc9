from .cursor import CursorPosition, encode_cursor, decode_cursor, configure_cursor_secret

__all__ = ["CursorPosition", "encode_cursor", "decode_cursor", "configure_cursor_secret"]
