"""VMware ESXi client connection and operations."""

from __future__ import annotations

import atexit
import ssl
import time
from typing import Optional

import requests
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from vmware2xcp.utils.logging import get_logger
from vmware2xcp.vmware.datastore import DatastoreFile

logger = get_logger(__name__)

# standalone ESXi hosts expose a single datacenter with this name
DEFAULT_DATACENTER = "ha-datacenter"


class VSphereClient:
    """Manages connection to a VMware ESXi host.

    Uses pyvmomi to connect via the vSphere API. Supports:
    - SSL certificate verification bypass (common for lab ESXi hosts)
    - Automatic retry with exponential backoff
    - Datastore file access reusing the API session cookie
    """

    def __init__(self):
        self._si: Optional[vim.ServiceInstance] = None
        self._content: Optional[vim.ServiceInstanceContent] = None
        self._host: str = ""
        self._port: int = 443
        self._insecure: bool = False
        self._http: Optional[requests.Session] = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def service_instance(self) -> vim.ServiceInstance:
        if self._si is None:
            raise ConnectionError("Not connected to ESXi. Call connect() first.")
        return self._si

    @property
    def content(self) -> vim.ServiceInstanceContent:
        if self._content is None:
            raise ConnectionError("Not connected to ESXi. Call connect() first.")
        return self._content

    def connect(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
        max_retries: int = 3,
    ) -> vim.ServiceInstance:
        """Connect to ESXi with retry logic.

        Args:
            host: ESXi hostname or IP address
            username: Login username
            password: Login password
            port: API port (default 443)
            insecure: Skip SSL certificate verification
            max_retries: Number of connection attempts

        Returns:
            vSphere ServiceInstance

        Raises:
            ConnectionError: If all connection attempts fail
        """
        self._host = host
        self._port = port
        self._insecure = insecure
        ssl_context = None
        if insecure:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                logger.info(f"Connecting to ESXi {host} (attempt {attempt}/{max_retries})")
                self._si = SmartConnect(
                    host=host,
                    user=username,
                    pwd=password,
                    port=port,
                    sslContext=ssl_context,
                )
                self._content = self._si.RetrieveContent()
                atexit.register(Disconnect, self._si)

                logger.info(f"Connected to ESXi: {host} "
                            f"(API version: {self._content.about.apiVersion}, "
                            f"Build: {self._content.about.build})")
                return self._si

            except Exception as e:
                last_error = e
                if attempt < max_retries:
                    delay = 2 ** attempt
                    logger.warning(f"Connection failed: {e}. Retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    logger.error(f"All {max_retries} connection attempts failed")

        raise ConnectionError(f"Failed to connect to ESXi {host}: {last_error}")

    def disconnect(self):
        """Gracefully disconnect from ESXi."""
        if self._http is not None:
            self._http.close()
            self._http = None
        if self._si:
            try:
                Disconnect(self._si)
                logger.info(f"Disconnected from ESXi: {self._host}")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self._si = None
                self._content = None

    def get_container_view(self, obj_type: list, recursive: bool = True):
        """Create a container view for efficient object retrieval."""
        return self.content.viewManager.CreateContainerView(
            self.content.rootFolder, obj_type, recursive
        )

    def get_vm(self, vm_id: str) -> vim.VirtualMachine:
        """Look a VM up by managed object id (e.g. "12")."""
        container = self.get_container_view([vim.VirtualMachine])
        try:
            for vm in container.view:
                if vm._moId == vm_id:
                    return vm
        finally:
            container.Destroy()
        raise ValueError(f"VM '{vm_id}' not found on {self._host}")

    def power_off(self, vm_id: str) -> None:
        """Hard power off a VM and wait until ESXi reports it stopped."""
        vm = self.get_vm(vm_id)
        if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOff:
            logger.info(f"VM {vm_id} already powered off")
            return
        logger.info(f"Powering off VM {vm_id} ({vm.name})")
        self.wait_for_task(vm.PowerOffVM_Task())

    def wait_for_task(self, task: vim.Task, timeout: int = 600) -> None:
        """Wait for a vSphere task to complete.

        Args:
            task: vSphere Task object
            timeout: Maximum wait time in seconds

        Raises:
            RuntimeError: If task fails or times out
        """
        start = time.time()
        while task.info.state in (vim.TaskInfo.State.running, vim.TaskInfo.State.queued):
            if time.time() - start > timeout:
                raise TimeoutError(f"Task timed out after {timeout}s: {task.info.descriptionId}")
            time.sleep(2)

        if task.info.state == vim.TaskInfo.State.success:
            return
        elif task.info.state == vim.TaskInfo.State.error:
            raise RuntimeError(f"Task failed: {task.info.error.msg}")

    def datastore_file(self, datastore: str, path: str, datacenter: str = DEFAULT_DATACENTER) -> DatastoreFile:
        """Open a file of a datastore through the host's /folder HTTP endpoint.

        The vSphere API session cookie authorizes the request, so no second
        login is needed. Every file shares one HTTP session, closed on
        disconnect.
        """
        url = f"https://{self._host}:{self._port}/folder/{path}"
        return DatastoreFile(
            url,
            params={"dcPath": datacenter, "dsName": datastore},
            session=self.http_session(),
        )

    def http_session(self) -> requests.Session:
        if self._http is None:
            session = requests.Session()
            session.headers.update({"Cookie": self.service_instance._stub.cookie})
            session.verify = not self._insecure
            self._http = session
        return self._http

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()
