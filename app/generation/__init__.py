"""Generation collaborator.

Text-in, text-out access to a chat-completions model plus the helpers the
pipeline needs around it:
  - Client abstraction with an OpenAI-compatible HTTP implementation
  - Structured parsing of model output into pydantic schemas
  - Bounded-concurrency pool with per-call timeouts
"""
