import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

import uvicorn

from ai_service import AIServiceError, AITextService
from http_facade import create_app
from portfolio_templates import get_template_list
from relay_config import ConfigError, RelayConfig
from relay_core import RelayConnectionError, RelayCore, set_relay
from relay_messages import (
    MESSAGE_TYPE_COMMAND,
    MESSAGE_TYPE_COMMAND_RESULT,
    MESSAGE_TYPE_ERROR,
    MESSAGE_TYPE_PROCESS_PROMPT,
)

logger = logging.getLogger(__name__)

USAGE = """usage: figma-relay <command> [--key=value ...]

commands:
  serve       listen for Figma plugins and run the HTTP API (default)
  connect     dial BRIDGE_URL (--bridge-url=...) and run the HTTP API
  templates   list portfolio templates
  prompt TEXT turn a design request into a structured command

options override environment variables, e.g. --relay-port=9100 --http-port=3334
"""


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] [relay] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S',
    )


class RelayApp:
    """Wires the relay, the HTTP facade and the AI service together.

    Plugins can also ask the relay for work: `command` messages naming one of
    the supported commands, and PROCESS_PROMPT messages. Each is answered on
    the connection it came from with a commandResult or an error message.
    """

    def __init__(self, config: RelayConfig, ai: Optional[AITextService] = None, relay: Optional[RelayCore] = None):
        self.config = config
        self.relay = relay or RelayCore(
            command_timeout=config.command_timeout,
            open_timeout=config.open_timeout,
            auto_reconnect=config.auto_reconnect,
            reconnect_interval=config.reconnect_interval,
            max_reconnect_attempts=config.max_reconnect_attempts,
        )
        self.ai = ai or AITextService(model=config.model, api_key=config.api_key)
        self.app = create_app(self.relay, operation_timeout=config.operation_timeout)
        self._server: Optional[uvicorn.Server] = None

        self.relay.on(MESSAGE_TYPE_COMMAND, self._handle_plugin_command)
        self.relay.on(MESSAGE_TYPE_PROCESS_PROMPT, self._handle_process_prompt)
        set_relay(self.relay)

    async def _handle_plugin_command(self, message: Dict[str, Any]) -> None:
        command = message.get("command")
        params = message.get("params") or {}
        connection_id = message.get("connectionId")
        logger.info(f"🛠️ Plugin command on connection {connection_id}: {command}")

        handlers = {
            "getTemplates": self._command_get_templates,
            "suggestDesign": self._command_suggest_design,
            "generateContent": self._command_generate_content,
            MESSAGE_TYPE_PROCESS_PROMPT: self._command_process_prompt,
        }
        handler = handlers.get(command)
        if handler is None:
            logger.warning(f"Unknown plugin command: {command}")
            await self._reply_error(command, "Unknown command", connection_id)
            return

        try:
            result = await handler(params)
        except AIServiceError as e:
            logger.error(f"❌ Plugin command {command} failed: {e}")
            await self._reply_error(command, str(e), connection_id)
            return
        await self._reply_result(command, result, connection_id)

    async def _handle_process_prompt(self, message: Dict[str, Any]) -> None:
        connection_id = message.get("connectionId")
        try:
            result = await self._command_process_prompt(message)
        except AIServiceError as e:
            logger.error(f"❌ AI prompt failed: {e}")
            await self._reply_error(MESSAGE_TYPE_PROCESS_PROMPT, str(e), connection_id)
            return
        await self._reply_result(MESSAGE_TYPE_PROCESS_PROMPT, result, connection_id)

    async def _command_get_templates(self, params: Dict[str, Any]) -> Any:
        return get_template_list()

    async def _command_suggest_design(self, params: Dict[str, Any]) -> Any:
        return await self.ai.suggest_design(params)

    async def _command_generate_content(self, params: Dict[str, Any]) -> Any:
        return await self.ai.generate_content(params.get("type", ""), params.get("context") or {})

    async def _command_process_prompt(self, params: Dict[str, Any]) -> Any:
        settings = params.get("settings") or {}
        prompt = params.get("prompt", "")
        logger.info(f"💬 Processing AI prompt: {prompt}")
        return await self.ai.process_design_prompt(
            prompt,
            designer_name=params.get("designerName"),
            design_style=settings.get("designStyle"),
        )

    async def _reply_result(self, command: Optional[str], result: Any, connection_id: Optional[int]) -> None:
        await self.relay.send(
            {"type": MESSAGE_TYPE_COMMAND_RESULT, "command": command, "result": result},
            connection_id,
        )

    async def _reply_error(self, command: Optional[str], error: str, connection_id: Optional[int]) -> None:
        await self.relay.send(
            {"type": MESSAGE_TYPE_ERROR, "command": command, "error": error},
            connection_id,
        )

    async def _run_http(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.config.http_host,
            port=self.config.http_port,
            log_level=self.config.log_level.lower(),
        )
        self._server = uvicorn.Server(config)
        logger.info(f"🌐 HTTP API at http://{self.config.http_host}:{self.config.http_port}")
        await self._server.serve()

    async def serve(self) -> None:
        """Listen for plugin connections and serve the HTTP API until interrupted."""
        await self.relay.serve(self.config.relay_host, self.config.relay_port)
        logger.info("Open the Figma plugin and connect it to the relay.")
        try:
            await self._run_http()
        finally:
            await self.relay.shutdown()

    async def connect(self) -> None:
        """Dial the configured bridge (redialing when it drops) and serve the HTTP API."""
        if not self.config.bridge_url:
            raise ConfigError("BRIDGE_URL is required for connect")
        await self.relay.open(self.config.bridge_url)
        logger.info(f"🌉 Connected to bridge at {self.config.bridge_url}")
        try:
            await self._run_http()
        finally:
            await self.relay.shutdown()


def get_config(argv: List[str]) -> Tuple[RelayConfig, List[str]]:
    """Get configuration from environment variables and CLI args."""
    config = RelayConfig.from_env()
    return config.with_args(argv)


def print_templates() -> None:
    print("📋 Available portfolio templates:")
    for template in get_template_list():
        print(f"- {template['id']}: {template['name']} - {template['description']}")


async def run_prompt(config: RelayConfig, prompt: str) -> Dict[str, Any]:
    ai = AITextService(model=config.model, api_key=config.api_key)
    return await ai.process_design_prompt(prompt)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        config, positional = get_config(argv)
    except ConfigError as e:
        print(f"{e}\n\n{USAGE}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)
    command = positional[0] if positional else "serve"

    if command == "templates":
        print_templates()
        return 0

    if command == "prompt":
        if len(positional) < 2:
            print(USAGE, file=sys.stderr)
            return 2
        if not config.api_key:
            logger.error("LITELLM_API_KEY environment variable is required")
            return 1
        try:
            result = asyncio.run(run_prompt(config, " ".join(positional[1:])))
        except AIServiceError as e:
            logger.error(f"❌ {e}")
            return 1
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return 0

    if command not in ("serve", "connect"):
        print(USAGE, file=sys.stderr)
        return 2

    logger.info("Starting Figma relay")
    logger.info(f"Relay: {config.bridge_url if command == 'connect' else config.relay_url}")
    logger.info(f"Command timeout: {config.command_timeout}s, operation timeout: {config.operation_timeout}s")

    app = RelayApp(config)
    try:
        asyncio.run(app.serve() if command == "serve" else app.connect())
    except KeyboardInterrupt:
        logger.info("Relay interrupted")
    except (RelayConnectionError, ConfigError) as e:
        logger.error(f"❌ {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
