from .resilient_io import safe_write_json, safe_log_write, safe_mkdir

__all__ = ["safe_write_json", "safe_log_write", "safe_mkdir"]
