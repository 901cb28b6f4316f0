from unittest import TestCase

from ambit_orchestrator.machine import run_machine
from ambit_orchestrator.policy import patch_auto_approver, patch_tag_owner
from ambit_orchestrator.tests.fakes import FakeFly, FakeLocal, FakeTailscale
from ambit_orchestrator.workflows.create_network import (
    CREATE_NETWORK_MACHINE,
    CreateNetworkContext,
    create_network,
    create_summary,
    ensure_router_acl,
    hydrate_create_network,
)

SUBNET = "fdaa:0:1234::/48"
ROUTER = "ambit-lab-abc12345"


def _joining_device(ts, hostname, **kwargs):
    # Auto-approved routes show up enabled as soon as the router joins.
    return ts.add_device(hostname, device_id="dev-router", addresses=["100.64.0.7", "fd7a::7"], tags=["tag:ambit-lab"], advertised=[SUBNET], enabled=[SUBNET])


def _never_joins(ts, hostname, **kwargs):
    return None


class CreateNetworkTestCase(TestCase):
    def setUp(self):
        self.fly = FakeFly()
        self.tailscale = FakeTailscale({"tagOwners": {}, "acls": []})
        self.local = FakeLocal()

    def _ctx(self, **overrides):
        values = dict(
            fly=self.fly,
            tailscale=self.tailscale,
            network="lab",
            org="acme",
            router_docker_dir="/srv/router",
            local=self.local,
            wait=_joining_device,
        )
        values.update(overrides)
        return CreateNetworkContext(**values)

    def _existing_router(self, state="started"):
        self.fly.add_app(ROUTER, network="lab")
        self.fly.add_machine(ROUTER, state=state, private_ip="fdaa:0:1234:a7b:1::2")


class HydrateCreateNetworkTests(CreateNetworkTestCase):
    def test_no_router_starts_at_create_app(self):
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "create_app")

    def test_router_on_other_network_is_ignored(self):
        self.fly.add_app("ambit-prod-zzz", network="prod")
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "create_app")

    def test_started_router_without_device_awaits_device(self):
        self._existing_router()
        ctx = self._ctx()
        self.assertEqual(hydrate_create_network(ctx).phase, "await_device")
        self.assertEqual(ctx.app_name, ROUTER)
        self.assertEqual(ctx.router_id, "abc12345")
        self.assertEqual(ctx.subnet, SUBNET)

    def test_stopped_router_redeploys(self):
        self._existing_router(state="stopped")
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "deploy_router")

    def test_router_without_machines_redeploys(self):
        self.fly.add_app(ROUTER, network="lab")
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "deploy_router")

    def test_skipping_approval_completes_once_router_runs(self):
        self._existing_router()
        self.assertEqual(hydrate_create_network(self._ctx(should_approve=False)).phase, "complete")

    def test_unapproved_routes_resume_at_approval(self):
        self._existing_router()
        self.tailscale.add_device(ROUTER, device_id="dev-router", advertised=[SUBNET], enabled=[])
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "approve_routes")

    def test_missing_dns_resumes_at_dns(self):
        self._existing_router()
        self.tailscale.add_device(ROUTER, device_id="dev-router", advertised=[SUBNET], enabled=[SUBNET])
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "configure_dns")

    def test_local_routes_off_resumes_at_accept_routes(self):
        self._existing_router()
        self.tailscale.add_device(ROUTER, device_id="dev-router", advertised=[SUBNET], enabled=[SUBNET])
        self.tailscale.split_dns["lab"] = ["100.64.0.10"]
        self.local.accept_routes = False
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "accept_routes")

    def test_fully_converged_network_is_complete(self):
        self._existing_router()
        self.tailscale.add_device(ROUTER, device_id="dev-router", advertised=[SUBNET], enabled=[SUBNET])
        self.tailscale.split_dns["lab"] = ["100.64.0.10"]
        self.assertEqual(hydrate_create_network(self._ctx()).phase, "complete")


class CreateNetworkRunTests(CreateNetworkTestCase):
    def test_fresh_network_converges(self):
        ctx = self._ctx()
        report = create_network(ctx)
        self.assertTrue(report.ok, report.step.error)
        self.assertEqual(report.start, "create_app")
        self.assertTrue(ctx.app_name.startswith("ambit-lab-"))
        self.assertEqual(len(ctx.router_id), 8)
        self.assertEqual(self.fly.apps[ctx.app_name]["network"], "lab")
        self.assertEqual(
            self.fly.secrets[ctx.app_name],
            {"TAILSCALE_AUTHKEY": "tskey-auth-fake", "NETWORK_NAME": "lab", "ROUTER_ID": ctx.router_id},
        )
        self.assertIn(("create_auth_key", ("tag:ambit-lab",), False, False, True), self.tailscale.calls)
        self.assertEqual(self.tailscale.split_dns, {"lab": ["100.64.0.7"]})
        self.assertEqual(self.tailscale.policy["tagOwners"], {"tag:ambit-lab": ["autogroup:admin"]})
        self.assertEqual(self.tailscale.policy["autoApprovers"]["routes"], {"fdaa::/16": ["tag:ambit-lab"]})
        self.assertEqual(ctx.subnet, SUBNET)

        summary = create_summary(ctx)
        self.assertEqual(summary["router"], {"app_name": ctx.app_name, "tailscale_ip": "100.64.0.7"})
        self.assertEqual(summary["tag"], "tag:ambit-lab")

    def test_second_run_has_no_side_effects(self):
        self.assertTrue(create_network(self._ctx()).ok)
        fly_calls, ts_calls = list(self.fly.calls), list(self.tailscale.calls)

        ctx = self._ctx()
        report = create_network(ctx)
        self.assertTrue(report.ok)
        self.assertEqual(report.start, "complete")
        self.assertEqual(len(report.skipped), len(CREATE_NETWORK_MACHINE.phases))
        self.assertEqual(self.fly.calls, fly_calls)
        self.assertEqual(self.tailscale.calls, ts_calls)

    def test_interrupted_run_resumes_without_recreating_app(self):
        self.fly.deploy_error = "Error: failed to fetch an image or build from source"
        first = create_network(self._ctx())
        self.assertFalse(first.ok)
        self.assertEqual(first.step.kind, "deploy_failed")
        self.assertEqual(first.step.detail, "Error: failed to fetch an image or build from source")
        app_name = next(name for name in self.fly.apps)

        self.fly.deploy_error = None
        ctx = self._ctx()
        second = create_network(ctx)
        self.assertTrue(second.ok)
        self.assertEqual(second.start, "deploy_router")
        self.assertEqual(ctx.app_name, app_name)
        self.assertEqual(len([c for c in self.fly.calls if c[0] == "create_app"]), 1)

    def test_device_timeout_fails_and_resumes_at_await(self):
        report = create_network(self._ctx(wait=_never_joins))
        self.assertFalse(report.ok)
        self.assertEqual(report.step.kind, "timeout")

        again = create_network(self._ctx())
        self.assertTrue(again.ok)
        self.assertEqual(again.start, "await_device")

    def test_without_approval_stops_after_deploy(self):
        ctx = self._ctx(should_approve=False, wait=_never_joins)
        report = create_network(ctx)
        self.assertTrue(report.ok)
        self.assertEqual(self.tailscale.split_dns, {})
        self.assertIsNone(ctx.device)

    def test_manual_approval_when_policy_has_no_auto_approver(self):
        self.tailscale.policy = {"tagOwners": {"tag:ambit-lab": ["autogroup:admin"]}}

        def _unapproved(ts, hostname, **kwargs):
            return ts.add_device(hostname, device_id="dev-router", advertised=[SUBNET])

        report = create_network(self._ctx(wait=_unapproved), manual=True)
        self.assertTrue(report.ok)
        self.assertIn(("approve_routes", "dev-router", (SUBNET,)), self.tailscale.calls)
        self.assertNotIn(("set_policy",), self.tailscale.calls)

    def test_missing_router_image_dir_fails(self):
        report = create_network(self._ctx(router_docker_dir=""))
        self.assertEqual(report.step.kind, "missing_state")

    def test_public_tld_is_refused_before_any_call(self):
        report = create_network(self._ctx(network="com"))
        self.assertFalse(report.ok)
        self.assertEqual(report.step.kind, "validation_failed")
        self.assertEqual(self.fly.calls, [])
        self.assertEqual(self.tailscale.calls, [])

    def test_malformed_network_name_is_refused(self):
        for network in ("Lab", "lab_net", "lab-"):
            report = create_network(self._ctx(network=network))
            self.assertEqual(report.step.kind, "validation_failed")
        self.assertEqual(self.fly.calls, [])

    def test_local_accept_routes_failure_is_a_warning(self):
        self.local.accept_routes = False
        self.local.can_enable = False
        ctx = self._ctx()
        self.assertTrue(create_network(ctx).ok)
        self.assertEqual(self.local.enable_calls, 1)
        self.assertEqual(len(ctx.warnings), 1)

    def test_run_from_any_hydrated_phase_reaches_complete(self):
        self._existing_router()
        self.tailscale.add_device(ROUTER, device_id="dev-router", advertised=[SUBNET], enabled=[])
        ctx = self._ctx()
        start = hydrate_create_network(ctx)
        self.assertEqual(run_machine(CREATE_NETWORK_MACHINE, start.phase, ctx).phase, "complete")
        self.assertEqual(self.tailscale.routes["dev-router"].enabled, [SUBNET])


class EnsureRouterAclTests(TestCase):
    def test_manual_mode_requires_existing_tag_owner(self):
        tailscale = FakeTailscale({"tagOwners": {}})
        result = ensure_router_acl(tailscale, "tag:ambit-lab", manual=True)
        self.assertFalse(result.ok)
        self.assertEqual(result.kind, "missing_state")
        self.assertEqual(tailscale.calls, [])

    def test_existing_approver_on_other_route_is_respected(self):
        policy = patch_auto_approver(patch_tag_owner({}, "tag:ambit-lab"), "tag:ambit-lab", "fdaa:0:1234::/48")
        tailscale = FakeTailscale(policy)
        result = ensure_router_acl(tailscale, "tag:ambit-lab")
        self.assertTrue(result.ok)
        self.assertFalse(result.changed)
        self.assertEqual(tailscale.calls, [])
