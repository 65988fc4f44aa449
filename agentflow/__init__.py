"""多 Agent 工作流编排引擎"""

__version__ = "0.1.0"
