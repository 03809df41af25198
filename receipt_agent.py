"""
Flask-based ESC/POS receipt agent for the QuickBill till.

Install with: pip install flask pyserial

Usage:
  RECEIPT_SERIAL_PORT=COM3 \
  RECEIPT_SERIAL_BAUD=9600 \
  python receipt_agent.py

POST JSON to /print with either a ready-made `text` body, or a
`transaction` record (camelCase, as stored by the till) plus the operator
`phone`; the agent lays out the receipt itself in the second case.
"""

import logging
import os
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from flask import Flask, jsonify, request
from serial import Serial, SerialException

from pos_models import Transaction

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

app = Flask(__name__)

SERIAL_PORT = os.environ.get("RECEIPT_SERIAL_PORT", "COM3")
BAUD_RATE = int(os.environ.get("RECEIPT_SERIAL_BAUD", "9600"))
LINE_FEEDS = int(os.environ.get("RECEIPT_LINE_FEEDS", "2"))
CUT_AFTER_PRINT = os.environ.get("RECEIPT_CUT_AFTER_PRINT", "True").lower() in ("1", "true", "yes")
RECEIPT_CURRENCY = os.environ.get("RECEIPT_CURRENCY", "RS.")
RECEIPT_WIDTH = int(os.environ.get("RECEIPT_WIDTH", "32"))
HOST = os.environ.get("RECEIPT_AGENT_HOST", "127.0.0.1")
PORT = int(os.environ.get("RECEIPT_AGENT_PORT", "5001"))
CORS_ORIGIN = os.environ.get("RECEIPT_AGENT_CORS_ORIGIN", "*")

WALK_IN_CUSTOMER = "Walk-in Customer"


def _format_amount(amount: float, currency: str = RECEIPT_CURRENCY) -> str:
    return f"{currency} {float(amount):.2f}"


def _two_columns(left: str, right: str, width: int) -> str:
    room = width - len(right) - 1
    if room < 1:
        return f"{left}\n{right.rjust(width)}"
    if len(left) > room:
        left = left[: max(room - 1, 0)] + "~"
    return f"{left.ljust(room)} {right}"


def _center(text: str, width: int) -> str:
    return text.center(width).rstrip()


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def format_receipt(
    transaction: Transaction,
    phone: Optional[str] = None,
    width: int = RECEIPT_WIDTH,
    currency: str = RECEIPT_CURRENCY,
) -> str:
    """Lay out a plain-text receipt for one finalized sale."""
    rule = "-" * width
    double_rule = "=" * width
    lines: List[str] = [
        _center("BUSINESS RECEIPT", width),
        _center(format_timestamp(transaction.timestamp), width),
        rule,
        _two_columns("Customer:", transaction.customer_name or WALK_IN_CUSTOMER, width),
        rule,
    ]
    for line in transaction.items:
        qty = f"{line.quantity:g}"
        lines.append(_two_columns(f"{line.name} (x{qty})", _format_amount(line.total, currency), width))
    lines.append(double_rule)
    lines.append(_two_columns("TOTAL AMOUNT", _format_amount(transaction.total_amount, currency), width))
    lines.append("")
    lines.append(_center("Thank you for your business!", width))
    if phone:
        lines.append(_center(f"Phone ID: {phone}", width))
    return "\n".join(lines) + "\n"


ESC_RESET = b"\x1b@"
# ESC/POS full cut: GS V 0
GS_FULL_CUT = b"\x1D\x56\x00"


@app.after_request
def add_cors_headers(response):
    # The till page posts receipts from its own origin
    response.headers["Access-Control-Allow-Origin"] = CORS_ORIGIN
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    return response


def parse_hex_commands(commands: Union[str, Sequence[str], None]) -> List[bytes]:
    """
    Decode raw ESC/POS commands sent as hex strings. Blank chunks are skipped
    and the first bad chunk raises ``ValueError``.
    """
    if not commands:
        return []
    if isinstance(commands, str):
        commands = [commands]
    elif not isinstance(commands, (list, tuple)):
        raise ValueError("hex must be a string or a list of strings")
    decoded: List[bytes] = []
    for chunk in commands:
        cleaned = str(chunk).strip().replace(" ", "")
        if not cleaned:
            continue
        try:
            decoded.append(bytes.fromhex(cleaned))
        except ValueError as exc:
            raise ValueError(f"Invalid hex chunk {chunk!r}: {exc}") from exc
    return decoded


def build_print_job(text: str, commands: Sequence[bytes], line_feeds: int, cut: bool) -> List[bytes]:
    """The byte chunks for one receipt, in the order they go to the printer."""
    job = [ESC_RESET]
    if text:
        job.append(text.encode("ascii", errors="ignore"))
    job.extend(commands)
    if line_feeds > 0:
        job.append(b"\n" * line_feeds)
    if cut:
        job.append(GS_FULL_CUT)
    return job


def send_to_printer(job: Iterable[bytes], port: str = SERIAL_PORT, baud: int = BAUD_RATE) -> None:
    try:
        with Serial(port, baud, timeout=1) as ser:
            for chunk in job:
                ser.write(chunk)
    except SerialException:
        logging.exception("Serial error on %s", port)
        raise


def _receipt_text(payload: dict) -> str:
    record = payload.get("transaction")
    if record is None:
        return str(payload.get("text") or "")
    if not isinstance(record, dict):
        raise ValueError("transaction must be an object")
    try:
        transaction = Transaction.from_dict(record)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed transaction: {exc!r}") from exc
    width = int(payload.get("width", RECEIPT_WIDTH))
    return format_receipt(transaction, payload.get("phone"), width=width)


@app.route("/print", methods=["POST", "OPTIONS"])
def print_receipt():
    if request.method == "OPTIONS":
        return jsonify(ok=True)

    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        logging.warning("Bad print payload: body is %s", type(payload).__name__)
        return jsonify(ok=False, error="Request body must be a JSON object"), 400
    try:
        text = _receipt_text(payload)
        extra_line_feeds = int(payload.get("line_feeds", LINE_FEEDS))
        # Validated before the port is opened
        commands = parse_hex_commands(payload.get("hex"))
    except (TypeError, ValueError) as exc:
        logging.warning("Bad print payload: %s", exc)
        return jsonify(ok=False, error=str(exc)), 400
    if not text and not commands:
        return jsonify(ok=False, error="Nothing to print"), 400
    cut = payload.get("cut", CUT_AFTER_PRINT)
    logging.info(
        "Preparing receipt: text len=%d snippet=%s",
        len(text),
        text.strip().replace("\n", "\\n")[:120],
    )

    try:
        send_to_printer(build_print_job(text, commands, extra_line_feeds, bool(cut)))
    except SerialException as exc:
        return jsonify(ok=False, error=str(exc)), 500

    logging.info("Printed receipt; text length=%d hex commands=%d", len(text), len(commands))
    return jsonify(ok=True)


@app.get("/health")
def health():
    return "ok", 200


if __name__ == "__main__":
    logging.info(
        "Starting receipt agent on http://%s:%d printing to %s@%d",
        HOST,
        PORT,
        SERIAL_PORT,
        BAUD_RATE,
    )
    # Avoid Flask reloader to keep serial port exclusive
    app.run(host=HOST, port=PORT, debug=False, use_reloader=False)
