"""
QAI — a ReAct coding and testing assistant for your terminal.

Drives a chat-model endpoint through a bounded Reason→Act→Observe loop,
letting the model read, write and edit files, run shell commands, query
Git and search the web until it produces a final answer.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qai-cli")
except PackageNotFoundError:
    # Running from a source tree that was never installed
    __version__ = "0.0.0+source"
