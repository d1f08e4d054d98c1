"""
Demo: streaming with tool calls through the gateway.

Runs offline against the scripted ``test-model`` by default. Pass a real
model id (and set its API key in ``.env``) to talk to a provider:

    python demo.py claude-sonnet-4-medium
"""
import asyncio
import json
import sys

from streamux import AgentContext, Gateway, RichStreamPrinter, Settings, init_logging
from streamux.providers import ScriptedProvider, ScriptedResponse
from streamux.utils import create_function_call, create_message, create_tool


# =============================================================================
# Tools (mock implementations)
# =============================================================================

def get_weather(args: dict) -> dict:
    """Mock weather lookup."""
    weather_data = {
        "Paris": {"temp": 18, "condition": "Partly cloudy"},
        "London": {"temp": 14, "condition": "Rainy"},
        "Tokyo": {"temp": 22, "condition": "Sunny"},
    }
    location = args.get("location", "")
    data = weather_data.get(location, {"temp": 15, "condition": "Unknown"})
    return {"location": location, **data}


TOOLS = [
    create_tool(
        name="get_weather",
        description="Get the current weather for a city",
        parameters={"location": {"type": "string", "description": "City name"}},
        required=["location"],
    ),
]
HANDLERS = {"get_weather": get_weather}


def scripted_gateway(settings: Settings) -> Gateway:
    provider = ScriptedProvider([
        ScriptedResponse(tool_calls=[{
            "id": "call_demo",
            "type": "function",
            "function": {"name": "get_weather", "arguments": json.dumps({"location": "Paris"})},
        }]),
        ScriptedResponse(
            thinking="The tool says Paris is 18 degrees and partly cloudy.",
            chunks=["## Paris\n\n", "It is **18°C** and partly cloudy, ", "a fine day for a walk."],
            usage={"input_tokens": 120, "output_tokens": 24},
        ),
    ], chunk_delay=0.2)
    return Gateway(settings=settings, providers={"test": provider})


async def main(model: str) -> None:
    settings = Settings.from_env()
    init_logging(settings=settings)
    gateway = scripted_gateway(settings) if model.startswith("test-") else Gateway(settings=settings)
    agent = AgentContext(agent_id="demo", tools=TOOLS, settings={"tool_choice": "auto"})
    history = [create_message("user", "What's the weather in Paris?")]

    # Keep going until the model answers without asking for tools
    for _ in range(5):
        printer = RichStreamPrinter(title=f"Streaming from {model}")
        await printer.print_stream(gateway.stream(history, model, agent))
        tool_calls = printer.get_tool_calls()
        if not tool_calls:
            break
        history.extend(create_function_call(call) for call in tool_calls)
        history.extend(await gateway.run_tools(tool_calls, HANDLERS, agent))

    gateway.cost_tracker.print_summary()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "test-model"))
