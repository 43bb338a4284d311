import nonebot
import pytest


def pytest_configure(config: pytest.Config) -> None:
    nonebot.init(
        driver="~fastapi",
        mcstatus={"timeout": 2, "srv_timeout": 0.5},
    )
    nonebot.load_plugin("nonebot_plugin_mcstatus")
