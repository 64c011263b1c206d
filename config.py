"""Server-wide configuration constants for the encounter combat server."""

import os

GRID_SIZE = 20            # Combat grid is GRID_SIZE x GRID_SIZE squares
FEET_PER_CELL = 5         # Each square = 5 feet
DEFAULT_SPEED = 30        # Walking speed in feet (6 squares)
DEFAULT_MELEE_REACH = 5   # Melee reach in feet
LINE_WIDTH_FT = 5         # Width given to every parsed line AOE
CONE_DOT_THRESHOLD = 0.5  # Minimum cosine between a cell and the cone axis
DEFAULT_DICE = "1d4"      # Rolled in place of a malformed dice expression
PLAYER_ID = "player"      # Fixed token id of the player in every encounter

NARRATION_TIMEOUT_SECONDS = float(os.environ.get("NARRATION_TIMEOUT_SECONDS", "20"))
TURN_WATCHDOG_SECONDS = float(os.environ.get("TURN_WATCHDOG_SECONDS", "30"))
RECENT_EVENTS_LIMIT = 10  # Event log entries handed to the narrator

DATA_DIR = os.environ.get("DATA_DIR", ".")  # Persistent data directory
STORE_DIR = os.path.join(DATA_DIR, "store")   # JSON document store root
SRD_DIR = os.environ.get("SRD_DIR", os.path.join(DATA_DIR, "srd"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
