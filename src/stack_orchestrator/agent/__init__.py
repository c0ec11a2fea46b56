"""
stack_orchestrator.agent

Conversational agent surface.

Responsibilities:
- Declare the closed set of agent tools with their input/output schemas.
- Dispatch validated tool calls into the orchestrator behind the confirmation gate.
- Turn lifecycle states, failures and raw logs into plain language.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The LLM loop itself lives outside this service; it only sees tool declarations and
# tool results.
