"""FTP account and server-link endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends

from vm_manager.auth import require_api_key
from vm_manager.ftp import FTPProvisioner, username_for
from vm_manager.models import (
    FTPCleanupRequest,
    FTPLinkRequest,
    FTPPasswordRequest,
    FTPUnlinkRequest,
    FTPUserRequest,
)
from vm_manager.state import get_provisioner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ftp", tags=["ftp"], dependencies=[Depends(require_api_key)])


@router.post("/users")
async def create_ftp_user(request: FTPUserRequest, provisioner: FTPProvisioner = Depends(get_provisioner)):
    """Create the tenant's FTP account, or return the existing one.

    The password is only included when the account was created by this call.
    """
    account = await provisioner.create_account(request.tenant_id)
    return account.model_dump(by_alias=True, exclude_none=True)


@router.get("/users/{tenant_id}")
async def get_ftp_user(tenant_id: str, provisioner: FTPProvisioner = Depends(get_provisioner)):
    return await provisioner.account_info(tenant_id)


@router.put("/users/{tenant_id}/password")
async def change_ftp_password(
    tenant_id: str,
    request: Optional[FTPPasswordRequest] = Body(None),
    provisioner: FTPProvisioner = Depends(get_provisioner),
):
    username = username_for(tenant_id)
    password = await provisioner.change_password(username, request.password if request else None)
    return {"username": username, "password": password}


@router.delete("/users/{tenant_id}")
async def delete_ftp_user(tenant_id: str, provisioner: FTPProvisioner = Depends(get_provisioner)):
    username = username_for(tenant_id)
    existed = await provisioner.delete_account(username)
    return {"message": "FTP user deleted" if existed else "FTP user did not exist", "username": username}


@router.post("/users/{tenant_id}/cleanup")
async def cleanup_ftp_user(
    tenant_id: str,
    request: FTPCleanupRequest,
    provisioner: FTPProvisioner = Depends(get_provisioner),
):
    """Delete the tenant's account if the caller reports no remaining servers."""
    deleted = await provisioner.cleanup_if_no_servers(tenant_id, request.remaining_servers)
    return {"deleted": deleted}


@router.post("/link")
async def link_server(request: FTPLinkRequest, provisioner: FTPProvisioner = Depends(get_provisioner)):
    """Snapshot a server's files into the tenant's FTP home."""
    return await provisioner.link_server(
        request.container_id,
        username_for(request.tenant_id),
        request.server_name,
        request.server_host,
        request.server_port,
    )


@router.delete("/link")
async def unlink_server(request: FTPUnlinkRequest, provisioner: FTPProvisioner = Depends(get_provisioner)):
    removed = await provisioner.unlink_server(
        username_for(request.tenant_id), request.server_host, request.server_port
    )
    return {"removed": removed}


@router.get("/status")
async def ftp_status(provisioner: FTPProvisioner = Depends(get_provisioner)):
    return await provisioner.status()
