from pathlib import Path
import sys

# Tests import dust_sweeper straight from src when the package is not installed
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))
