"""Request dependencies resolving the service components wired in main.py."""

from fastapi import HTTPException, Request

from ci_provisioner.config import Settings
from ci_provisioner.hosts import KnownHostsProvider
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.dispatcher import JobDispatcher
from ci_provisioner.jobs.registry import JobRegistry


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return component


def get_registry(request: Request) -> JobRegistry:
    return _component(request, "registry")


def get_broker(request: Request) -> LogStreamBroker:
    return _component(request, "broker")


def get_dispatcher(request: Request) -> JobDispatcher:
    return _component(request, "dispatcher")


def get_hosts(request: Request) -> KnownHostsProvider:
    return _component(request, "hosts")


def get_settings(request: Request) -> Settings:
    return _component(request, "settings")
