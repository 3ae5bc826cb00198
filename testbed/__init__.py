from .dispatcher import Result, build_report, map_with_output
from .interfaces import Core, Output
from .ranges import parse_range

__all__ = ["Core", "Output", "Result", "build_report", "map_with_output", "parse_range"]
