import io
import json
from contextlib import redirect_stdout
from unittest import TestCase
from unittest import mock

from ambit_orchestrator import cli
from ambit_orchestrator.naming import AppNameError, split_app_target
from ambit_orchestrator.tests.fakes import FakeFly, FakeTailscale

ROUTER = "ambit-lab-abc12345"


class SplitAppTargetTests(TestCase):
    def test_dotted_target(self):
        self.assertEqual(split_app_target("api.lab"), ("api", "lab"))

    def test_bare_name_with_network(self):
        self.assertEqual(split_app_target("api", "lab"), ("api", "lab"))

    def test_invalid_targets(self):
        for target, network in (("a.b.c", ""), (".lab", ""), ("api.lab", "lab"), ("api", "")):
            with self.assertRaises(AppNameError):
                split_app_target(target, network)


class ResolveOrgTests(TestCase):
    def test_single_org_is_used(self):
        fly = mock.Mock()
        fly.list_orgs.return_value = {"acme": "Acme"}
        self.assertEqual(cli.resolve_org(fly, None), "acme")

    def test_personal_preferred_among_many(self):
        fly = mock.Mock()
        fly.list_orgs.return_value = {"acme": "Acme", "personal": "Me"}
        self.assertEqual(cli.resolve_org(fly, None), "personal")

    def test_ambiguous_orgs_raise(self):
        fly = mock.Mock()
        fly.list_orgs.return_value = {"acme": "Acme", "beta": "Beta"}
        with self.assertRaises(cli.CliError):
            cli.resolve_org(fly, None)


class MainTests(TestCase):
    def setUp(self):
        self.fly = FakeFly()
        self.fly.add_app(ROUTER, network="lab")
        self.fly.add_machine(ROUTER, private_ip="fdaa:0:1234:a7b:1::2")
        self.tailscale = FakeTailscale()
        patcher = mock.patch.object(cli, "_session", return_value=(self.fly, self.tailscale, "acme"))
        self.session = patcher.start()
        self.addCleanup(patcher.stop)

    def _main(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = cli.main(["--log-level", "CRITICAL", *argv])
        return code, out.getvalue()

    def test_deploy_image_emits_summary(self):
        code, out = self._main("deploy", "api.lab", "--image", "nginx:latest", "-y")
        self.assertEqual(code, cli.EXIT_OK)
        summary = json.loads(out)
        self.assertEqual(summary["app"], "api-abc12345")
        self.assertTrue(summary["created"])

    def test_deploy_that_needed_public_ip_release_is_unsafe(self):
        self.fly.public_ips_on_deploy = ["1.2.3.4"]
        code, _ = self._main("deploy", "api.lab", "--image", "nginx:latest", "-y")
        self.assertEqual(code, cli.EXIT_UNSAFE)

    def test_deploy_rejects_image_and_config_together(self):
        code, _ = self._main("deploy", "api.lab", "--image", "nginx", "--config", "fly.toml", "-y")
        self.assertEqual(code, cli.EXIT_FAILED)
        self.session.assert_not_called()

    def test_router_names_are_refused(self):
        code, _ = self._main("destroy", "app", f"{ROUTER}.lab", "-y")
        self.assertEqual(code, cli.EXIT_FAILED)
        self.assertIn(ROUTER, self.fly.apps)

    def test_declined_destroy_is_cancelled(self):
        self.tailscale.split_dns["lab"] = ["100.64.0.10"]
        with mock.patch("builtins.input", return_value="n"):
            code, _ = self._main("destroy", "network", "lab")
        self.assertEqual(code, cli.EXIT_CANCELLED)
        self.assertEqual(self.tailscale.split_dns, {"lab": ["100.64.0.10"]})

    def test_share_validates_members_before_session(self):
        code, _ = self._main("share", "lab", "alice")
        self.assertEqual(code, cli.EXIT_FAILED)
        self.session.assert_not_called()

    def test_list_networks(self):
        code, out = self._main("list")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertEqual(json.loads(out), [{"network": "lab", "app_name": ROUTER, "state": "started", "tag": None, "online": None}])

    def test_list_unknown_network_fails(self):
        code, _ = self._main("list", "prod")
        self.assertEqual(code, cli.EXIT_FAILED)

    def test_status_of_network(self):
        code, out = self._main("status", "lab")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertEqual(json.loads(out)["router"]["machine"]["subnet"], "fdaa:0:1234::/48")
