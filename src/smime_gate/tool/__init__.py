from smime_gate.tool.base import SmimeTool
from smime_gate.tool.runner import SmimeToolRunner

__all__ = ["SmimeTool", "SmimeToolRunner"]
