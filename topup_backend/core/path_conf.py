from pathlib import Path

# Project root directory
BASE_PATH = Path(__file__).resolve().parent.parent
