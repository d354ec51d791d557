"""
qai.agent — The QAI ReAct agent.

An autonomous coding and QA assistant that runs in your terminal. A
language model is driven through bounded think → tool → observe cycles:

    - Streaming chat with OpenAI, Anthropic, xAI, Ollama, Zen or a custom endpoint
    - File reading, writing and exact-match editing
    - Shell commands with timeouts
    - Regex code search and web search
    - Git status, diff, log, add and commit
    - Double Ctrl+C cancellation with a confirm window

Usage:
    qai run "add tests for the parser"   # One task, exit with its status
    qai chat --provider ollama           # Interactive REPL
"""

__all__ = ["run_chat", "run_once"]

from qai.agent.chat import run_chat, run_once
