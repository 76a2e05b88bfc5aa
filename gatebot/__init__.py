"""
gatebot - conversational agent gateway with policy-filtered tools
"""

__version__ = "0.3.0"
__logo__ = "🦞"
