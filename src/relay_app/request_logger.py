import logging
from datetime import datetime


def log_request_to_console(
    request_id: str, client_info: tuple, request_data: dict, backend: str
):
    """
    Logs a concise, single-line summary of an incoming chat request to the console.
    """
    time_str = datetime.now().strftime("%H:%M")
    model = request_data.get("model") or "default"
    stream = bool(request_data.get("stream", False))
    message_count = len(request_data.get("messages") or [])

    log_message = (
        f"{time_str} - {client_info[0]}:{client_info[1]} - [{request_id}] "
        f"model: {model}, stream: {stream}, messages: {message_count} - backend: {backend}"
    )
    logging.info(log_message)
