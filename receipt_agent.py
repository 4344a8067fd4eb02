"""
Local ESC/POS print agent: writes receipt text to a serial/USB printer.

Usage:
  RECEIPT_SERIAL_PORT=/dev/ttyUSB0 \
  RECEIPT_SERIAL_BAUD=9600 \
  python receipt_agent.py

The terminal POSTs JSON to /print with `text` and optional raw `hex` chunks.
"""
import logging
import os
from typing import Iterable, Sequence

from flask import Flask, jsonify, request
from serial import Serial, SerialException

from pos_config import configure_logging

log = logging.getLogger("receipt_agent")

app = Flask(__name__)

SERIAL_PORT = os.environ.get("RECEIPT_SERIAL_PORT", "/dev/ttyUSB0")
BAUD_RATE = int(os.environ.get("RECEIPT_SERIAL_BAUD", "9600"))
LINE_FEEDS = int(os.environ.get("RECEIPT_LINE_FEEDS", "3"))
CUT_AFTER_PRINT = os.environ.get("RECEIPT_CUT_AFTER_PRINT", "True").lower() in ("1", "true", "yes")
HOST = os.environ.get("RECEIPT_AGENT_HOST", "127.0.0.1")
PORT = int(os.environ.get("RECEIPT_AGENT_PORT", "5001"))

ESC_INIT = b"\x1B\x40"
GS_CUT = b"\x1D\x56\x00"


@app.after_request
def allow_cors(response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    return response


def sequence_to_bytes(sequence: Sequence[str]) -> Iterable[bytes]:
    """Hex strings such as ``"1b 61 01"`` to raw command bytes."""
    for chunk in sequence:
        cleaned = str(chunk).strip().replace(" ", "")
        if not cleaned:
            continue
        try:
            yield bytes.fromhex(cleaned)
        except ValueError as exc:
            raise ValueError(f"Invalid hex chunk {chunk!r}: {exc}") from exc


def render_payload(text: str, hex_commands: Sequence[str], line_feeds: int, cut: bool) -> bytes:
    """Everything sent to the printer for one job, in order."""
    out = bytearray(ESC_INIT)
    if text:
        out += text.encode("ascii", errors="replace")
    for data in sequence_to_bytes(hex_commands):
        out += data
    if line_feeds > 0:
        out += b"\n" * line_feeds
    if cut:
        out += GS_CUT
    return bytes(out)


def write_to_printer(data: bytes) -> None:
    with Serial(SERIAL_PORT, BAUD_RATE, timeout=1) as ser:
        ser.write(data)
        ser.flush()


@app.route("/print", methods=["POST", "OPTIONS"])
def print_receipt():
    if request.method == "OPTIONS":
        return jsonify(ok=True)

    payload = request.get_json(force=True, silent=True) or {}
    text = str(payload.get("text") or "")
    hex_commands = payload.get("hex") or []
    if isinstance(hex_commands, str):
        hex_commands = [hex_commands]
    try:
        line_feeds = int(payload.get("line_feeds", LINE_FEEDS))
        data = render_payload(text, list(hex_commands), line_feeds, bool(payload.get("cut", CUT_AFTER_PRINT)))
    except (TypeError, ValueError) as exc:
        log.warning("Bad print payload: %s", exc)
        return jsonify(ok=False, error=str(exc)), 400

    log.info("Printing receipt: text len=%d snippet=%s", len(text), text.strip().replace("\n", "\\n")[:80])
    try:
        write_to_printer(data)
    except SerialException as exc:
        log.error("Serial error on %s: %s", SERIAL_PORT, exc)
        return jsonify(ok=False, error=str(exc)), 500
    return jsonify(ok=True, bytes=len(data))


@app.get("/health")
def health():
    return jsonify(ok=True, port=SERIAL_PORT)


if __name__ == "__main__":
    configure_logging()
    log.info("Starting receipt agent on http://%s:%d printing to %s@%d", HOST, PORT, SERIAL_PORT, BAUD_RATE)
    # no reloader: the serial port must stay exclusive
    app.run(host=HOST, port=PORT, debug=False, use_reloader=False)
