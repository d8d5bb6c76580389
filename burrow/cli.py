"""
Burrow 命令行工具

使用示例:
    # 暴露本地 3000 端口
    burrow expose --port 3000 --name my-app

    # 认证管理
    burrow auth
    burrow status
    burrow logout
"""

import asyncio
import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .auth import DeviceCode, authenticate, get_token, logout as clear_token, token_status
from .config import AgentConfig
from .connection import ConnectionManager, SessionState
from .errors import RegistrationRejected, ShutdownRequested, TunnelError

console = Console()

DAY = 24 * 60 * 60


def setup_logging(verbose: bool = False) -> None:
    """配置日志"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def show_device_code(device_code: DeviceCode) -> None:
    """展示设备码认证说明"""
    console.print()
    console.print("[bold]需要认证[/bold]")
    console.print("  1. 在浏览器中打开:")
    console.print(f"     [cyan]{device_code.url}[/cyan]")
    console.print("  2. 输入设备码:")
    console.print(f"     [bold]{device_code.code}[/bold]")
    if device_code.expires_in:
        console.print(f"  [dim]设备码将在 {device_code.expires_in // 60} 分钟后过期[/dim]")
    console.print()


async def _expose(config: AgentConfig, port: int, name: str, description: str) -> None:
    token = await get_token(config.auth_server_url, config=config, on_device_code=show_device_code)

    console.print("[dim]正在建立隧道连接...[/dim]")
    manager = ConnectionManager(config=config)
    try:
        tunnel = await manager.start(port, name, token, description)
        console.print(f"[green]✓[/green] 隧道已建立: [bold]{tunnel.url}[/bold] → localhost:{port}")
        await manager.wait_closed()
    finally:
        await manager.close()

    if manager.shutdown_requested:
        raise ShutdownRequested("Interrupted")
    if manager.state == SessionState.FAILED:
        raise TunnelError("Tunnel session ended with an error")
    raise TunnelError("Connection to tunnel server closed")


@click.group()
@click.version_option(version=__version__)
def main():
    """Burrow - 将本地服务通过隧道暴露到公网"""
    pass


@main.command()
@click.option("--port", "-p", type=int, required=True, help="本地服务端口")
@click.option("--name", "-n", required=True, help="隧道名称")
@click.option("--server", "-s", default=None, help="隧道服务端 WebSocket URL")
@click.option("--description", "-d", default=None, help="隧道描述")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def expose(port: int, name: str, server: str | None, description: str | None, verbose: bool):
    """暴露本地服务"""
    setup_logging(verbose)

    config = AgentConfig()
    if server:
        config.server_url = server
    description = description or config.default_description

    console.print("[bold blue]Burrow[/bold blue]")
    console.print(f"  服务端: {config.server_url}")
    console.print(f"  本地端口: {port}")
    console.print(f"  名称: {name}")
    console.print()

    try:
        asyncio.run(_expose(config, port, name, description))
    except ShutdownRequested:
        console.print("\n[dim]已停止[/dim]")
        sys.exit(0)
    except KeyboardInterrupt:
        console.print("\n[dim]已停止[/dim]")
        sys.exit(0)
    except RegistrationRejected as e:
        label = "致命错误" if e.fatal else "注册失败"
        console.print(f"[red]✗[/red] {label}: {e.message}")
        sys.exit(1)
    except (TunnelError, ValueError) as e:
        console.print(f"[red]✗[/red] 错误: {e}")
        sys.exit(1)


@main.command()
@click.option("--server", "-s", default=None, help="认证服务 URL")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def auth(server: str | None, verbose: bool):
    """登录认证"""
    setup_logging(verbose)

    config = AgentConfig()
    server = server or config.auth_server_url
    console.print(f"[bold blue]Burrow[/bold blue] 认证: {server}")

    try:
        asyncio.run(authenticate(server, config=config, on_device_code=show_device_code))
    except TunnelError as e:
        console.print(f"[red]✗[/red] 认证失败: {e}")
        sys.exit(1)

    console.print("[green]✓[/green] 认证完成")


@main.command()
def logout():
    """清除本地令牌"""
    config = AgentConfig()
    try:
        removed = clear_token(config)
    except OSError as e:
        console.print(f"[red]✗[/red] 退出失败: {e}")
        sys.exit(1)

    if removed:
        console.print("[green]✓[/green] 已退出登录")
    else:
        console.print("[dim]未找到令牌[/dim]")


@main.command()
def status():
    """查看认证状态"""
    config = AgentConfig()
    stored = token_status(config)

    if stored is None:
        console.print("[red]✗[/red] 未认证")
        return

    days_old = int(stored.age // DAY)
    days_left = int(config.token_max_age // DAY) - days_old
    saved_at = datetime.fromtimestamp(stored.timestamp).strftime("%Y-%m-%d %H:%M")

    console.print("[green]✓[/green] 已认证")
    console.print(f"  服务端: {stored.server_url or '未知'}")
    console.print(f"  保存时间: {saved_at}")
    console.print(f"  令牌年龄: {days_old} 天")
    if days_left > 0:
        console.print(f"  剩余有效期: {days_left} 天")
    else:
        console.print("  [yellow]已过期，下次使用时将重新认证[/yellow]")


if __name__ == "__main__":
    main()
