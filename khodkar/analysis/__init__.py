"""Business-rule analysis: configuration, LLM and tool-server clients, agent core."""
