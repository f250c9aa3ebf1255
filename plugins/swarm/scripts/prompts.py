#!/usr/bin/env python3
"""
Swarm Instruction Prompts

Builds the instruction payload written to the external process's stdin.
The prompt steers the agent toward the MCP tools the stream parser knows
how to classify.
"""
from __future__ import annotations

STRATEGIES = (
    "auto", "research", "development", "analysis",
    "testing", "optimization", "maintenance",
)
MODES = ("centralized", "distributed", "hierarchical", "mesh", "hybrid")

# Mode -> topology passed to swarm_init
MODE_TOPOLOGY = {
    "centralized": "star",
    "distributed": "mesh",
    "hierarchical": "hierarchical",
    "mesh": "mesh",
    "hybrid": "hierarchical",
}

STRATEGY_GUIDANCE = {
    "auto": "Choose the agent mix that best fits the objective.",
    "research": "Favor researcher and analyst agents; gather sources before concluding.",
    "development": "Favor architect, coder and tester agents; design before implementing.",
    "analysis": "Favor analyst agents; break the subject into independent questions.",
    "testing": "Favor tester and reviewer agents; enumerate cases before executing them.",
    "optimization": "Favor optimizer and analyst agents; measure before and after changes.",
    "maintenance": "Favor reviewer and coder agents; keep changes small and reversible.",
}


def build_swarm_prompt(
    task: str,
    strategy: str = "auto",
    mode: str = "centralized",
    max_agents: int = 5,
    server: str = "claude-flow",
) -> str:
    """Build the orchestration instructions for a headless swarm run."""
    if not task.strip():
        raise ValueError("Task description is empty")
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy '{strategy}': expected one of {', '.join(STRATEGIES)}")
    if mode not in MODES:
        raise ValueError(f"Unknown mode '{mode}': expected one of {', '.join(MODES)}")
    if max_agents < 1:
        raise ValueError(f"max_agents must be at least 1, got {max_agents}")

    tool = f"mcp__{server}__"
    return f"""\
SWARM OBJECTIVE
{task.strip()}

CONFIGURATION
Strategy: {strategy} | Mode: {mode} | Max agents: {max_agents}
{STRATEGY_GUIDANCE[strategy]}

EXECUTION PROTOCOL
You are running headless: no human will answer questions or approve steps.
1. Initialize the swarm with {tool}swarm_init (topology "{MODE_TOPOLOGY[mode]}", maxAgents {max_agents}).
2. Spawn each agent with {tool}agent_spawn, giving it a "type" and a "name".
3. Create every unit of work with {tool}task_orchestrate, giving it a "task"
   description and its "dependencies" (names of tasks it waits on).
4. Store decisions and results with {tool}memory_usage (action "store", with
   "key", "value" and "namespace").
5. Work through the tasks until the objective is met, then stop.

Do not ask for confirmation. If a step fails, record the failure in memory and continue
with the remaining tasks.
""".strip()
