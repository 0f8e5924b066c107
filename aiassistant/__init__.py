"""
In-process AI assistant core: chat orchestration, agent routing, tool
dispatch and resource governance for the monitoring platform.
"""

__version__ = "0.1.0"
