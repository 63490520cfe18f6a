"""Challenge presentation surfaces for the human solver."""
