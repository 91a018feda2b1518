"""
Grid Adapter package.

Provides:
- An OpenAI-compatible FastAPI front for the grid's asynchronous text API
- The job translator, poller and response emitter behind it
- A command-line runner for single grid jobs
"""
