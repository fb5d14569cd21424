"""Bounded reason/act/observe loop over the retrieval tools."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from src.agent.tools import Tool, format_tools_for_prompt
from src.capabilities import LLMProvider, ToolCall, ToolCallingLLM

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5
STOP_SEQUENCES = ["\nObservation:", "\nQuestion:"]
NUDGE = "\nThought: I should provide a final answer now.\nFinal Answer:"

NO_FINDINGS_ANSWER = (
    "I searched through the conversations but couldn't find relevant information "
    "for your question."
)

SEARCH_RULES = """CRITICAL RULES FOR SEARCH:
- NEVER translate the user's query - keep it in the ORIGINAL LANGUAGE
- Names like "Romane", "Agnès", "Hervé" are PEOPLE'S NAMES, not objects or food
- This is personal WhatsApp chat history - search for names, topics, and keywords AS-IS
- If the question is in French, search in French
- Preserve accents and special characters in searches

IMPORTANT for Final Answer:
- Reply in the SAME LANGUAGE as the user's question
- Synthesize a clear, direct answer to the user's question
- Extract and highlight the KEY information from the conversations
- Include specific dates, names, and quotes when relevant
- Do NOT just list raw search results - interpret and summarize them
- If asking about advice/recommendations, state what advice was given"""

REACT_PROMPT = """You are an AI assistant that helps users query their WhatsApp conversation history.
You have access to the following tools:

{tools}

Use the following format:

Question: the input question you must answer
Thought: you should always think about what to do
Action: the action to take, should be one of [{tool_names}]
Action Input: the input to the action as JSON
Observation: the result of the action
... (this Thought/Action/Action Input/Observation can repeat N times)
Thought: I now know the final answer
Final Answer: the final answer to the original input question

{rules}

Begin!

Question: {question}
Thought:"""

NATIVE_SYSTEM_PROMPT = """You are an AI assistant that helps users query their WhatsApp conversation history.
Use the tools to look things up before answering. When you have enough information,
reply with the final answer and call no more tools.

{rules}"""

SYNTHESIS_PROMPT = """Based on the following conversation search results, provide a clear and helpful answer to the user's question.

## Question
{question}

## Search Results
{observations}

## Instructions
- RESPOND IN THE SAME LANGUAGE AS THE QUESTION (if French, reply in French)
- Synthesize the information into a clear, direct answer
- Extract the KEY points that answer the question
- Include specific details: dates, names, exact quotes when relevant
- If the question asks about advice/recommendations, clearly state what was said
- Write naturally, as if explaining to a friend
- If information is incomplete or unclear, acknowledge that
- Do NOT just repeat the raw messages - interpret and summarize them
- Names in the conversations (Romane, Agnès, Hervé, etc.) are PEOPLE

## Answer"""

_FINAL_ANSWER_RE = re.compile(r"Final Answer:\s*(.*?)(?:\n\n|$)", re.IGNORECASE | re.DOTALL)
_ACTION_RE = re.compile(r"Action:\s*(\w+)", re.IGNORECASE)
_ACTION_INPUT_RE = re.compile(r"Action Input:\s*(.*)", re.IGNORECASE | re.DOTALL)


@dataclass
class ParsedResponse:
    thought: str = ""
    action: str | None = None
    action_input: dict[str, Any] | None = None
    final_answer: str | None = None


@dataclass
class ReasoningStep:
    thought: str
    action: str
    observation: str


@dataclass
class AgentResult:
    answer: str
    reasoning: list[ReasoningStep] = field(default_factory=list)
    metadata: dict[str, int] = field(default_factory=dict)


@dataclass
class _Step:
    thought: str
    action: str
    action_input: dict[str, Any]
    observation: str


def _parse_action_input(text: str) -> dict[str, Any] | None:
    """Decode the JSON object after ``Action Input:``.

    Anything undecodable becomes ``{"query": <rest of the line>}``.
    """
    start = text.find("{")
    if start != -1:
        try:
            value, _ = json.JSONDecoder().raw_decode(text[start:])
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value

    line = text.strip().splitlines()[0].strip() if text.strip() else ""
    return {"query": line} if line else None


def parse_response(response: str) -> ParsedResponse:
    """Extract the final answer, or a thought plus action and its input, from a completion.

    A ``Final Answer:`` marker with nothing after it yields no answer and no action.
    """
    final = _FINAL_ANSWER_RE.search(response)
    if final:
        return ParsedResponse(final_answer=final.group(1).strip() or None)

    parsed = ParsedResponse(thought=response.split("\nAction:", 1)[0].strip())
    if parsed.thought.lower().startswith("thought:"):
        parsed.thought = parsed.thought[len("thought:") :].strip()

    action = _ACTION_RE.search(response)
    if action:
        parsed.action = action.group(1)

    action_input = _ACTION_INPUT_RE.search(response)
    if action_input:
        parsed.action_input = _parse_action_input(action_input.group(1))

    return parsed


def describe_action(action: str, params: dict[str, Any] | None) -> str:
    """Human-readable rendering of a tool call for the reasoning trace."""
    params = params or {}
    name = action.lower()
    if name == "search":
        who = f" involving {params['participant']}" if params.get("participant") else ""
        return f'Searched for "{params.get("query") or "conversations"}"{who}'
    if name == "filter_by_date":
        since = f" from {params['startDate']}" if params.get("startDate") else ""
        until = f" to {params['endDate']}" if params.get("endDate") else ""
        return f"Filtered results by date range{since}{until}"
    if name == "summarize":
        return f'Summarized findings about "{params.get("topic") or "the topic"}"'
    if name == "list_participants":
        return "Retrieved list of conversation participants"
    return f"Performed {action}"


class ReActAgent:
    """Answer multi-step questions by alternating model reasoning with tool calls.

    The loop makes at most ``max_iterations`` model calls. When the model
    exposes native tool calling and ``use_native_tools`` is set, tool calls
    are structured; otherwise the completion text is parsed for
    ``Action:`` / ``Action Input:`` / ``Final Answer:`` sections. If the
    budget runs out without an answer, the collected observations are
    synthesized in one extra call.
    """

    def __init__(
        self,
        llm: LLMProvider,
        tools: list[Tool],
        max_iterations: int = MAX_ITERATIONS,
        use_native_tools: bool = True,
    ) -> None:
        self._llm = llm
        self._tools = {tool.name: tool for tool in tools}
        self._max_iterations = max_iterations
        self._use_native_tools = use_native_tools

    async def run(self, question: str) -> AgentResult:
        started = time.monotonic()

        if self._use_native_tools and isinstance(self._llm, ToolCallingLLM):
            answer, steps, iterations = await self._run_native(self._llm, question)
        else:
            answer, steps, iterations = await self._run_text(question)

        if answer is None:
            logger.info("Agent stopped without an answer after %d iterations", iterations)
            answer = await self._synthesize(question, steps)

        return AgentResult(
            answer=answer,
            reasoning=[
                ReasoningStep(
                    thought=step.thought,
                    action=describe_action(step.action, step.action_input),
                    observation=step.observation,
                )
                for step in steps
            ],
            metadata={
                "query_time_ms": int((time.monotonic() - started) * 1000),
                "steps": len(steps),
                "iterations": iterations,
            },
        )

    async def _call_tool(self, name: str, params: dict[str, Any]) -> str:
        tool = self._tools.get(name)
        if tool is None:
            return f'Error: Unknown tool "{name}"'
        return await tool.execute(params)

    async def _run_text(self, question: str) -> tuple[str | None, list[_Step], int]:
        prompt = REACT_PROMPT.format(
            tools=format_tools_for_prompt(list(self._tools.values())),
            tool_names=", ".join(self._tools),
            rules=SEARCH_RULES,
            question=question,
        )
        steps: list[_Step] = []
        nudged = False

        for iteration in range(1, self._max_iterations + 1):
            response = await self._llm.generate(
                prompt, max_tokens=500, temperature=0.3, stop_sequences=STOP_SEQUENCES
            )
            parsed = parse_response(response)
            logger.debug("Agent iteration %d: action=%s", iteration, parsed.action)

            if parsed.final_answer:
                return parsed.final_answer, steps, iteration

            if parsed.action and parsed.action_input is not None:
                observation = await self._call_tool(parsed.action, parsed.action_input)
                steps.append(_Step(parsed.thought, parsed.action, parsed.action_input, observation))
                prompt += f"{response}\nObservation: {observation}\nThought:"
                nudged = False
            elif nudged and response.strip() and not _FINAL_ANSWER_RE.search(response):
                # The transcript already ends with "Final Answer:".
                return response.strip(), steps, iteration
            else:
                prompt += response + NUDGE
                nudged = True

        return None, steps, self._max_iterations

    async def _run_native(
        self, llm: ToolCallingLLM, question: str
    ) -> tuple[str | None, list[_Step], int]:
        schemas = [tool.to_schema() for tool in self._tools.values()]
        system_prompt = NATIVE_SYSTEM_PROMPT.format(rules=SEARCH_RULES)
        messages: list[dict[str, Any]] = [{"role": "user", "content": question}]
        steps: list[_Step] = []

        for iteration in range(1, self._max_iterations + 1):
            turn = await llm.chat_with_tools(
                messages, schemas, system_prompt=system_prompt, max_tokens=1024, temperature=0.3
            )
            logger.debug(
                "Agent iteration %d: tool calls=%s", iteration, [c.name for c in turn.tool_calls]
            )

            if not turn.tool_calls:
                # An empty turn ends the loop without an answer.
                return turn.text.strip() or None, steps, iteration

            results: list[tuple[ToolCall, str]] = []
            for call in turn.tool_calls:
                observation = await self._call_tool(call.name, call.arguments)
                steps.append(_Step(turn.text.strip(), call.name, call.arguments, observation))
                results.append((call, observation))

            messages.append(turn.assistant_message)
            messages.append(llm.tool_results_message(results))

        return None, steps, self._max_iterations

    async def _synthesize(self, question: str, steps: list[_Step]) -> str:
        observations = [s.observation for s in steps if not s.observation.startswith("Error")]
        if not observations:
            return NO_FINDINGS_ANSWER

        prompt = SYNTHESIS_PROMPT.format(
            question=question, observations="\n\n---\n\n".join(observations)
        )
        try:
            answer = await self._llm.generate(prompt, max_tokens=500, temperature=0.5)
        except Exception:
            logger.warning("Answer synthesis failed, returning raw observations", exc_info=True)
            return "Based on my search, here's what I found:\n\n" + "\n\n".join(observations)
        return answer.strip()
