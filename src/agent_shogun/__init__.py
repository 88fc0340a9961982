"""Agent Shogun - commander / manager / worker のマルチエージェント協調ツール"""

__version__ = "0.1.0"
