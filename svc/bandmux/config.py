from __future__ import annotations
import os

# Service mode: "sim" for the built in simulated band or "real" for the serial bridge
MODE = os.getenv("SVC_MODE", "sim").lower()

# Serial bridge to the physical band (real mode)
BAND_SERIAL_PORT = os.getenv("BAND_SERIAL_PORT", "/dev/ttyUSB0")
BAND_BAUDRATE = int(os.getenv("BAND_BAUDRATE", "115200"))
BAND_READ_TIMEOUT_S = float(os.getenv("BAND_READ_TIMEOUT_S", "1.0"))

# Seconds to wait between reconnect attempts, last value repeats
RECONNECT_DELAYS = [2, 5, 10, 20, 30]

# Max undelivered events per connection before the oldest is dropped
OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", "256"))

# Max unsent command replies per connection; a client past this is disconnected
CONTROL_QUEUE_SIZE = int(os.getenv("CONTROL_QUEUE_SIZE", "128"))

# RPC sessions idle longer than this are closed and their features released
RPC_SESSION_TTL_S = float(os.getenv("RPC_SESSION_TTL_S", "300"))
RPC_SWEEP_INTERVAL_S = float(os.getenv("RPC_SWEEP_INTERVAL_S", "30"))

# Generate synthetic telemetry for enabled features in sim mode
SIM_TELEMETRY = os.getenv("SIM_TELEMETRY", "0").lower() in ("1", "true", "yes", "on")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8766"))
