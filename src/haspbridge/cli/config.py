"""``haspbridge config``: inspect the effective bridge configuration."""

from __future__ import annotations

from typing import Any

import click

from haspbridge.cli._options import global_options

config_group = click.Group("config", help="Bridge configuration commands.")


def _redacted(data: dict[str, Any]) -> dict[str, Any]:
    """Mask credentials before the config is printed."""
    from haspbridge.hasp.broker import redact_broker_url

    result = dict(data)
    if result.get("signalkToken"):
        result["signalkToken"] = "***"
    if result.get("mqttBrokerAddress"):
        result["mqttBrokerAddress"] = redact_broker_url(result["mqttBrokerAddress"])
    return result


@config_group.command("show")
@click.option("--broker", default=None, help="MQTT broker URL override")
@click.option("--signalk", "signalk_url", default=None, help="Signal K stream URL override")
@click.option("--self-id", default=None, help="System id override")
@global_options
def show_cmd(
    app_ctx: object,
    broker: str | None,
    signalk_url: str | None,
    self_id: str | None,
) -> None:
    """Show the effective configuration and every path binding.

    Applies the same precedence as ``run``: flags, then ``HASPBRIDGE_*``
    environment variables, then the config file.
    """
    from haspbridge.cli.main import AppContext
    from haspbridge.hasp.config import BridgeConfig
    from haspbridge.hasp.topics import build_command_topic
    from haspbridge.models.config import AppSettings

    assert isinstance(app_ctx, AppContext)
    formatter = app_ctx.formatter
    settings = AppSettings()

    config = BridgeConfig.load(app_ctx.config_path or settings.config_file)
    config = config.merge_overrides(
        mqtt_broker_address=broker or settings.mqtt_broker_address,
        signalk_url=signalk_url or settings.signalk_url,
        self_id=self_id or settings.self_id,
    )
    bindings = config.bindings()

    if formatter.format == "json":
        formatter.output(
            {
                "config": _redacted(config.model_dump(by_alias=True, exclude_none=True)),
                "bindings": [
                    {
                        "node": b.node_name,
                        "path": b.path,
                        "keyword": b.keyword,
                        "interval": b.interval,
                        "topic": build_command_topic(b.node_name),
                    }
                    for b in bindings
                ],
            },
            command="config.show",
        )
        return

    formatter.rich.config_summary(config)
    if bindings:
        formatter.rich.bindings(bindings)
    else:
        formatter.rich.info("[yellow]No path bindings configured.[/yellow]")
