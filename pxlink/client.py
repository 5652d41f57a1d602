"""
Capability client - one method per controller capability.

Each REST capability runs resolve -> pooled session -> POST -> unwrap and
returns a CapabilityResult. Topic subscriptions and publishers run over a
StompMessagingAdapter obtained from connect().
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import aiohttp
import structlog

from pxlink.core.adapters.rest_adapter import RestSession
from pxlink.core.adapters.stomp_adapter import StompMessagingAdapter
from pxlink.core.domain.models import (
    BusError,
    CapabilityError,
    ClientIdentity,
    PxgridError,
    RegisteredService,
)
from pxlink.core.domain.services.discovery import ServiceResolver
from pxlink.core.ports.outbound.messaging import MessageHandler
from pxlink.core.services.control import DEFAULT_PORT, ControlSession
from pxlink.core.services.lease import ReregistrationLease
from pxlink.core.services.session_pool import RestSessionPool

logger = structlog.get_logger(__name__)

ANC_SERVICE = "com.cisco.ise.config.anc"
SESSION_SERVICE = "com.cisco.ise.session"
PROFILER_SERVICE = "com.cisco.ise.config.profiler"
MDM_SERVICE = "com.cisco.ise.mdm"
RADIUS_SERVICE = "com.cisco.ise.radius"
SYSTEM_HEALTH_SERVICE = "com.cisco.ise.system"
TRUSTSEC_SERVICE = "com.cisco.ise.trustsec"
TRUSTSEC_CONFIG_SERVICE = "com.cisco.ise.config.trustsec"
TRUSTSEC_SXP_SERVICE = "com.cisco.ise.sxp"
PUBSUB_SERVICE = "com.cisco.ise.pubsub"
ENDPOINT_ASSET_SERVICE = "com.cisco.endpoint.asset"

MDM_ENDPOINT_TYPES = ("NON_COMPLIANT", "REGISTERED", "DISCONNECTED")
MDM_OS_TYPES = ("ANDROID", "IOS", "WINDOWS")

# subscription name -> (service, topic property)
TOPICS: dict[str, tuple[str, str]] = {
    "anc_policies": (ANC_SERVICE, "statusTopic"),
    "endpoint_asset": (ENDPOINT_ASSET_SERVICE, "assetTopic"),
    "groups": (SESSION_SERVICE, "groupTopic"),
    "mdm_endpoints": (MDM_SERVICE, "endpointTopic"),
    "profiler": (PROFILER_SERVICE, "topic"),
    "radius_failures": (RADIUS_SERVICE, "failureTopic"),
    "security_groups": (TRUSTSEC_CONFIG_SERVICE, "securityGroupTopic"),
    "sessions": (SESSION_SERVICE, "sessionTopic"),
    "sxp_bindings": (TRUSTSEC_SXP_SERVICE, "bindingTopic"),
    "trustsec_policy_downloads": (TRUSTSEC_SERVICE, "policyDownloadTopic"),
}


@dataclass
class CapabilityResult:
    """Outcome of a capability REST call."""
    success: bool
    service_name: str
    path: str
    data: Any = None
    status_code: int | None = None
    elapsed_ms: float = 0.0
    error: PxgridError | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def unwrap(self) -> Any:
        """Return the data, or raise the error of a failed call."""
        if not self.success:
            raise self.error or CapabilityError(self.service_name, self.path, "call failed")
        return self.data


def asset_update(asset: dict[str, Any]) -> dict[str, Any]:
    """Envelope of an endpoint asset publication."""
    return {"opType": "UPDATE", "asset": asset}


class Publisher:
    """
    A registered service publishing to its own topic.

    Created by PxgridClient.create_custom_publisher() and
    create_endpoint_asset_publisher(); the registration is kept alive by a
    reregistration lease until close().
    """

    def __init__(
        self,
        bus: StompMessagingAdapter,
        control: ControlSession,
        registration: RegisteredService,
        destination: str,
        lease: Optional[ReregistrationLease] = None,
        wrap: Optional[Callable[[Any], Any]] = None,
    ):
        self.bus = bus
        self.registration = registration
        self.destination = destination
        self.lease = lease
        self._control = control
        self._wrap = wrap

    async def publish(self, body: Any) -> None:
        payload = self._wrap(body) if self._wrap else body
        await self.bus.publish(self.destination, payload)

    async def close(self) -> None:
        """Stop reregistering and unregister the service."""
        await self._control.service_unregister(self.registration.id)


class PxgridClient:
    """
    Capability client for the controller.

    Usage:
        ```python
        client = PxgridClient.from_options(
            client_name="my-app",
            hosts=["ise-1.example.com"],
            cert_file="client.cer",
            key_file="client.key",
            ca_bundle="ca.cer",
        )
        await client.control.activate()

        result = await client.get_sessions()
        if result.success:
            print(result.data)

        bus = await client.connect()
        await client.subscribe_to_sessions(bus, on_session)
        ```
    """

    def __init__(
        self,
        control: ControlSession,
        lookup_retry_interval: float = 30.0,
        lookup_max_retries: int = 10,
        cache_secrets: bool = False,
        rest_timeout: Optional[float] = None,
    ):
        """
        Args:
            control: Control session of this client
            lookup_retry_interval: Seconds between lookups while a service has no provider
            lookup_max_retries: Lookup retries before giving up
            cache_secrets: Cache node access secrets instead of refetching them
            rest_timeout: Total timeout of capability REST calls, in seconds
        """
        self._control = control
        self._resolver = ServiceResolver(
            control,
            retry_interval=lookup_retry_interval,
            max_retries=lookup_max_retries,
            cache_secrets=cache_secrets,
        )
        self._pool = RestSessionPool(
            self._resolver,
            control.identity.name,
            ssl_context=control.ssl_context,
            timeout=rest_timeout,
        )
        self._asset_publisher: Optional[Publisher] = None

    @classmethod
    def from_control(cls, control: ControlSession, **settings: Any) -> "PxgridClient":
        """Build on an existing control session."""
        return cls(control, **settings)

    @classmethod
    def from_options(
        cls,
        client_name: str,
        hosts: list[str] | str,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        key_password: Optional[str] = None,
        ca_bundle: Optional[str] = None,
        secret: str = "",
        port: int = DEFAULT_PORT,
        verify_tls: bool = True,
        timeout: float = 1.0,
        **settings: Any,
    ) -> "PxgridClient":
        """Build the identity and control session from plain options."""
        identity = ClientIdentity(
            name=client_name,
            cert_file=cert_file,
            key_file=key_file,
            key_password=key_password,
            ca_bundle=ca_bundle,
            secret=secret,
        )
        control = ControlSession(
            identity,
            hosts=hosts,
            port=port,
            verify_tls=verify_tls,
            timeout=timeout,
        )
        return cls(control, **settings)

    @property
    def control(self) -> ControlSession:
        return self._control

    @property
    def resolver(self) -> ServiceResolver:
        return self._resolver

    async def get_rest_session(self, service_name: str) -> RestSession:
        return await self._pool.get(service_name)

    async def close(self) -> None:
        """Close REST sessions and stop every reregistration lease."""
        self._asset_publisher = None
        await self._pool.close()
        await self._control.close()

    async def __aenter__(self) -> "PxgridClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # === REST Calls ===

    async def call(
        self,
        service_name: str,
        path: str,
        payload: dict[str, Any] | None = None,
        unwrap: str | None = None,
    ) -> CapabilityResult:
        """
        Call a capability REST endpoint.

        Args:
            service_name: Service providing the capability
            path: Path relative to the service's restBaseUrl
            payload: JSON body
            unwrap: Envelope field holding the payload, e.g. ``sessions``

        Returns:
            CapabilityResult; failures carry a PxgridError
        """
        start = time.time()
        try:
            session = await self._pool.get(service_name)
            response = await session.post(path, payload or {})
        except PxgridError as e:
            return self._failed(service_name, path, e, start)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = CapabilityError(service_name, path, str(e) or type(e).__name__)
            return self._failed(service_name, path, error, start)

        if not response.is_success:
            error = CapabilityError(
                service_name,
                path,
                response.error_message(),
                status_code=response.status_code,
            )
            return self._failed(service_name, path, error, start)

        try:
            data = response.json()
        except ValueError:
            error = CapabilityError(
                service_name,
                path,
                "response is not valid JSON",
                status_code=response.status_code,
            )
            return self._failed(service_name, path, error, start)

        if unwrap is not None:
            data = data.get(unwrap) if isinstance(data, dict) else None

        return CapabilityResult(
            success=True,
            service_name=service_name,
            path=path,
            data=data,
            status_code=response.status_code,
            elapsed_ms=(time.time() - start) * 1000,
        )

    def _failed(
        self,
        service_name: str,
        path: str,
        error: PxgridError,
        start: float,
    ) -> CapabilityResult:
        logger.error(
            "capability_call_failed",
            service=service_name,
            path=path,
            error=str(error),
        )
        return CapabilityResult(
            success=False,
            service_name=service_name,
            path=path,
            status_code=getattr(error, "status_code", None),
            elapsed_ms=(time.time() - start) * 1000,
            error=error,
        )

    # Session directory

    async def get_sessions(self) -> CapabilityResult:
        return await self.call(SESSION_SERVICE, "/getSessions", unwrap="sessions")

    async def get_session_by_ip(self, ip: str) -> CapabilityResult:
        return await self.call(SESSION_SERVICE, "/getSessionByIpAddress", {"ipAddress": ip})

    async def get_session_by_mac(self, mac: str) -> CapabilityResult:
        return await self.call(SESSION_SERVICE, "/getSessionByMacAddress", {"macAddress": mac})

    async def get_user_groups(self) -> CapabilityResult:
        return await self.call(SESSION_SERVICE, "/getUserGroups", unwrap="userGroups")

    async def get_user_group_by_user_name(self, name: str) -> CapabilityResult:
        return await self.call(
            SESSION_SERVICE, "/getUserGroupByUserName", {"userName": name}, unwrap="groups"
        )

    # Profiler

    async def get_profiles(self) -> CapabilityResult:
        return await self.call(PROFILER_SERVICE, "/getProfiles", unwrap="profiles")

    # MDM

    async def get_mdm_endpoints(self, filter: dict[str, Any] | None = None) -> CapabilityResult:
        payload = {"filter": filter} if filter else {}
        return await self.call(MDM_SERVICE, "/getEndpoints", payload, unwrap="endpoints")

    async def get_mdm_endpoint_by_mac(self, mac: str) -> CapabilityResult:
        return await self.call(MDM_SERVICE, "/getEndpointByMacAddress", {"macAddress": mac})

    async def get_mdm_endpoints_by_type(self, type: str) -> CapabilityResult:
        """Endpoints of one MDM type: NON_COMPLIANT, REGISTERED or DISCONNECTED."""
        if type not in MDM_ENDPOINT_TYPES:
            raise ValueError(f"type must be one of {', '.join(MDM_ENDPOINT_TYPES)}")
        return await self.call(
            MDM_SERVICE, "/getEndpointsByType", {"type": type}, unwrap="endpoints"
        )

    async def get_mdm_endpoints_by_os(self, os_type: str) -> CapabilityResult:
        """Endpoints of one OS: ANDROID, IOS or WINDOWS."""
        if os_type not in MDM_OS_TYPES:
            raise ValueError(f"os_type must be one of {', '.join(MDM_OS_TYPES)}")
        return await self.call(
            MDM_SERVICE, "/getEndpointsByOsType", {"osType": os_type}, unwrap="endpoints"
        )

    # Adaptive Network Control (ANC)

    async def get_anc_policies(self) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/getPolicies", unwrap="policies")

    async def get_anc_policy_by_name(self, name: str) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/getPolicyByName", {"name": name})

    async def create_anc_policy(self, name: str, actions: list[str]) -> CapabilityResult:
        """Create an ANC policy, e.g. ``create_anc_policy("quarantine", ["QUARANTINE"])``."""
        if not isinstance(actions, (list, tuple)):
            raise TypeError("actions must be a list of ANC actions")
        return await self.call(
            ANC_SERVICE, "/createPolicy", {"name": name, "actions": list(actions)}
        )

    async def delete_anc_policy(self, name: str) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/deletePolicyByName", {"name": name})

    async def get_anc_endpoints(self) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/getEndpoints", unwrap="endpoints")

    async def get_anc_endpoint_by_mac(self, mac: str) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/getEndpointByMacAddress", {"macAddress": mac})

    async def apply_anc_to_endpoint_by_mac(self, policy: str, mac: str) -> CapabilityResult:
        return await self.call(
            ANC_SERVICE,
            "/applyEndpointByMacAddress",
            {"policyName": policy, "macAddress": mac},
        )

    async def clear_anc_from_endpoint_by_mac(self, policy: str, mac: str) -> CapabilityResult:
        return await self.call(
            ANC_SERVICE,
            "/clearEndpointByMacAddress",
            {"policyName": policy, "macAddress": mac},
        )

    async def apply_anc_to_endpoint_by_ip(self, policy: str, ip: str) -> CapabilityResult:
        return await self.call(
            ANC_SERVICE,
            "/applyEndpointByIpAddress",
            {"policyName": policy, "ipAddress": ip},
        )

    async def clear_anc_from_endpoint_by_ip(self, policy: str, ip: str) -> CapabilityResult:
        return await self.call(
            ANC_SERVICE,
            "/clearEndpointByIpAddress",
            {"policyName": policy, "ipAddress": ip},
        )

    async def get_anc_operation_status(self, operation_id: str) -> CapabilityResult:
        return await self.call(ANC_SERVICE, "/getOperationStatus", {"operationId": operation_id})

    # RADIUS

    async def get_radius_failures(self, start_timestamp: str | None = None) -> CapabilityResult:
        payload = {"startTimestamp": start_timestamp} if start_timestamp else {}
        return await self.call(RADIUS_SERVICE, "/getFailures", payload, unwrap="failures")

    async def get_radius_failure_by_id(self, failure_id: str) -> CapabilityResult:
        return await self.call(RADIUS_SERVICE, "/getFailureById", {"id": failure_id})

    # TrustSec configuration

    async def get_security_groups(self, group_id: str | None = None) -> CapabilityResult:
        payload = {"id": group_id} if group_id else {}
        return await self.call(
            TRUSTSEC_CONFIG_SERVICE, "/getSecurityGroups", payload, unwrap="securityGroups"
        )

    async def get_security_group_acls(self, acl_id: str | None = None) -> CapabilityResult:
        payload = {"id": acl_id} if acl_id else {}
        return await self.call(
            TRUSTSEC_CONFIG_SERVICE, "/getSecurityGroupAcls", payload, unwrap="securityGroupAcls"
        )

    async def get_egress_policies(self) -> CapabilityResult:
        return await self.call(
            TRUSTSEC_CONFIG_SERVICE, "/getEgressPolicies", unwrap="egressPolicies"
        )

    async def get_egress_matrices(self) -> CapabilityResult:
        return await self.call(
            TRUSTSEC_CONFIG_SERVICE, "/getEgressMatrices", unwrap="egressMatrices"
        )

    # TrustSec SXP

    async def get_sxp_bindings(self) -> CapabilityResult:
        return await self.call(TRUSTSEC_SXP_SERVICE, "/getBindings", unwrap="bindings")

    # System health

    async def get_system_health(
        self,
        node_name: str | None = None,
        start_timestamp: str | None = None,
    ) -> CapabilityResult:
        payload = self._health_payload(node_name, start_timestamp)
        return await self.call(SYSTEM_HEALTH_SERVICE, "/getHealths", payload, unwrap="healths")

    async def get_system_performance(
        self,
        node_name: str | None = None,
        start_timestamp: str | None = None,
    ) -> CapabilityResult:
        payload = self._health_payload(node_name, start_timestamp)
        return await self.call(
            SYSTEM_HEALTH_SERVICE, "/getPerformances", payload, unwrap="performances"
        )

    @staticmethod
    def _health_payload(node_name: str | None, start_timestamp: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if node_name:
            payload["nodeName"] = node_name
        if start_timestamp:
            payload["startTimestamp"] = start_timestamp
        return payload

    # === Message bus ===

    async def connect_to_broker(self, **bus_options: Any) -> StompMessagingAdapter:
        """
        Build a message bus session on the pub/sub service.

        The returned adapter is not activated yet; call activate() and
        wait_connected() on it, or use connect().

        Args:
            **bus_options: Passed to StompMessagingAdapter (reconnect_delay, hooks, ...)
        """
        pubsub = await self._resolver.resolve(PUBSUB_SERVICE)
        bus = StompMessagingAdapter.from_descriptor(
            pubsub,
            self._control.identity.name,
            self._control.ssl_context,
            **bus_options,
        )
        logger.info("bus_created", url=bus.ws_url, node_name=pubsub.node_name)
        return bus

    async def connect(
        self,
        timeout: float | None = None,
        **bus_options: Any,
    ) -> StompMessagingAdapter:
        """Build, activate and wait for a connected message bus session."""
        bus = await self.connect_to_broker(**bus_options)
        await bus.activate()
        try:
            await bus.wait_connected(timeout)
        except (BusError, asyncio.TimeoutError):
            await bus.deactivate()
            raise
        return bus

    async def subscribe_to_custom(
        self,
        bus: StompMessagingAdapter,
        service_name: str,
        topic_property: str,
        callback: MessageHandler,
    ) -> str:
        """Subscribe to the topic a service advertises under topic_property."""
        service = await self._resolver.resolve(service_name)
        return await bus.subscribe(service.property(topic_property), callback)

    async def subscribe_to_sessions(self, bus: StompMessagingAdapter, callback: MessageHandler) -> str:
        return await self._subscribe_topic(bus, "sessions", callback)

    async def subscribe_to_groups(self, bus: StompMessagingAdapter, callback: MessageHandler) -> str:
        return await self._subscribe_topic(bus, "groups", callback)

    async def subscribe_to_profiler(self, bus: StompMessagingAdapter, callback: MessageHandler) -> str:
        return await self._subscribe_topic(bus, "profiler", callback)

    async def subscribe_to_mdm_endpoints(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "mdm_endpoints", callback)

    async def subscribe_to_anc_policies(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "anc_policies", callback)

    async def subscribe_to_radius_failures(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "radius_failures", callback)

    async def subscribe_to_trustsec_policy_downloads(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "trustsec_policy_downloads", callback)

    async def subscribe_to_security_groups(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "security_groups", callback)

    async def subscribe_to_sxp_bindings(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "sxp_bindings", callback)

    async def subscribe_to_endpoint_asset(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> str:
        return await self._subscribe_topic(bus, "endpoint_asset", callback)

    async def subscribe_to_all_topics(
        self, bus: StompMessagingAdapter, callback: MessageHandler
    ) -> dict[str, str]:
        """
        Subscribe one callback to every known topic.

        All or nothing: if any topic cannot be subscribed, the topics that
        succeeded are unsubscribed again and the first error is raised.

        Returns:
            Topic name -> subscription id
        """
        names = list(TOPICS)
        results = await asyncio.gather(
            *(self._subscribe_topic(bus, name, callback) for name in names),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        if not errors:
            return dict(zip(names, results))

        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error("topic_subscribe_failed", topic=name, error=str(result))
            else:
                await bus.unsubscribe(result)
        raise errors[0]

    async def _subscribe_topic(
        self,
        bus: StompMessagingAdapter,
        name: str,
        callback: MessageHandler,
    ) -> str:
        service_name, topic_property = TOPICS[name]
        return await self.subscribe_to_custom(bus, service_name, topic_property, callback)

    # === Publishers ===

    async def create_custom_publisher(
        self,
        bus: StompMessagingAdapter,
        service_name: str,
        topic_property: str,
    ) -> Publisher:
        """
        Register as provider of service_name and publish to ``/topic/<service_name>``.

        The topic is advertised under topic_property so subscribers can find it
        with subscribe_to_custom().
        """
        return await self._create_publisher(bus, service_name, topic_property)

    async def create_endpoint_asset_publisher(
        self,
        bus: StompMessagingAdapter,
        service_name: str = ENDPOINT_ASSET_SERVICE,
    ) -> Publisher:
        """Publisher wrapping every asset as ``{"opType": "UPDATE", "asset": ...}``."""
        return await self._create_publisher(bus, service_name, "assetTopic", wrap=asset_update)

    async def publish_endpoint_asset_update(
        self,
        bus: StompMessagingAdapter,
        asset: dict[str, Any],
    ) -> None:
        """
        Publish one asset update, registering the asset publisher on first use.

        The registration is shared across buses; a different bus only
        rebinds the publisher.
        """
        if not asset:
            raise ValueError("No asset provided to publish")
        if self._asset_publisher is None:
            self._asset_publisher = await self.create_endpoint_asset_publisher(bus)
        elif self._asset_publisher.bus is not bus:
            logger.info(
                "publisher_rebound",
                service=self._asset_publisher.registration.name,
                url=bus.ws_url,
            )
            self._asset_publisher.bus = bus
        await self._asset_publisher.publish(asset)

    async def _create_publisher(
        self,
        bus: StompMessagingAdapter,
        service_name: str,
        topic_property: str,
        wrap: Optional[Callable[[Any], Any]] = None,
    ) -> Publisher:
        destination = f"/topic/{service_name}"
        registration = await self._control.service_register(
            service_name,
            {"wsPubsubService": PUBSUB_SERVICE, topic_property: destination},
        )

        lease = None
        if registration.reregister_time_millis > 0:
            lease = self._control.auto_service_reregister(
                registration.id,
                registration.reregister_time_millis,
            )

        logger.info(
            "publisher_created",
            service=service_name,
            destination=destination,
        )
        return Publisher(
            bus,
            self._control,
            registration,
            destination,
            lease=lease,
            wrap=wrap,
        )
