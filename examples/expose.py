#!/usr/bin/env python
"""
隧道客户端示例

连接到隧道服务端，注册隧道后将请求转发到本地服务。
"""

import argparse
import asyncio
import logging

from burrow import AgentConfig, TunnelInfo, get_token, run_agent

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """主函数"""
    parser = argparse.ArgumentParser(description="burrow 隧道客户端示例")
    parser.add_argument("--port", "-p", type=int, default=3000, help="本地服务端口")
    parser.add_argument("--name", "-n", default="demo", help="隧道名称")
    parser.add_argument("--server", "-s", default="ws://localhost:8080", help="隧道服务端 URL")
    parser.add_argument("--token", "-t", help="Bearer 令牌（不指定时走设备码认证）")
    args = parser.parse_args()

    config = AgentConfig(server_url=args.server)
    token = args.token or await get_token(config.auth_server_url, config=config)

    def on_registered(tunnel: TunnelInfo):
        logger.info(f"✅ 隧道已建立: {tunnel.url} → localhost:{args.port}")

    print("=" * 50)
    print("🔗 隧道客户端启动")
    print("=" * 50)
    print(f"服务端: {config.server_url}")
    print(f"本地端口: {args.port}")
    print(f"名称: {args.name}")
    print("=" * 50)

    session = await run_agent(
        args.port,
        args.name,
        token,
        description="burrow example",
        config=config,
        on_registered=on_registered,
    )
    logger.info(f"会话结束: state={session.state.value}")


if __name__ == "__main__":
    asyncio.run(main())
