import pytest

from envbake.errors import MalformedStepSpec, ValidationError
from envbake.models import (
    BaseImage,
    Cleanup,
    IntegrityPolicy,
    PackageInstall,
    ProvisioningStep,
    StepKind,
)
from envbake.validate import validate_build_inputs, validate_step

BASE = BaseImage.parse("ubuntu:22.04")
DIGEST = "a" * 64


def test_valid_recipe_passes() -> None:
    validate_build_inputs(
        BASE,
        [
            ProvisioningStep.package_install(
                "curl", "qemu-system", "gcc=4:11.2.0-1ubuntu1", order=0
            ),
            ProvisioningStep.remote_script_install(
                "https://sh.rustup.rs",
                integrity=IntegrityPolicy.pinned(DIGEST),
                order=1,
                args=("-y",),
                env={"RUSTUP_INIT_SKIP_PATH_CHECK": "yes"},
            ),
            ProvisioningStep.cleanup("/var/lib/apt/lists/*", order=2),
        ],
    )


@pytest.mark.parametrize(
    "step",
    [
        ProvisioningStep(kind=StepKind.PACKAGE_INSTALL, payload=PackageInstall(()), order=0),
        ProvisioningStep.package_install("curl", "curl=1.0", order=0),
        ProvisioningStep.package_install("bad name", order=0),
        ProvisioningStep.package_install("curl", order=0, manager="yum"),  # type: ignore[arg-type]
        ProvisioningStep(kind=StepKind.CLEANUP, payload=PackageInstall(("curl",)), order=0),
        ProvisioningStep.package_install("curl", order=-1),
        ProvisioningStep.package_install("curl", order=0, timeout=0),
        ProvisioningStep.package_install("curl", order=0, provides=("relative/path",)),
        ProvisioningStep.remote_script_install(
            "ftp://example.invalid/install.sh",
            integrity=IntegrityPolicy.pinned(DIGEST),
            order=0,
        ),
        ProvisioningStep.remote_script_install(
            "https:///install.sh",
            integrity=IntegrityPolicy.pinned(DIGEST),
            order=0,
        ),
        ProvisioningStep.remote_script_install(
            "https://example.invalid/install.sh",
            integrity=IntegrityPolicy.pinned("ABC"),
            order=0,
        ),
        ProvisioningStep.remote_script_install(
            "https://example.invalid/install.sh",
            integrity=IntegrityPolicy(kind="lock", sha256=DIGEST),
            order=0,
        ),
        ProvisioningStep.remote_script_install(
            "https://example.invalid/install.sh",
            integrity=IntegrityPolicy.pinned(DIGEST),
            order=0,
            env={"1BAD": "x"},
        ),
        ProvisioningStep(kind=StepKind.CLEANUP, payload=Cleanup(()), order=0),
        ProvisioningStep.cleanup("var/cache", order=0),
        ProvisioningStep.cleanup("/", order=0),
        ProvisioningStep.cleanup("/*", order=0),
        ProvisioningStep.cleanup("/var/../etc", order=0),
        ProvisioningStep.cleanup("/tmp/$(reboot)", order=0),
        ProvisioningStep.cleanup("/tmp/*", order=0, preserve=("/tmp/a b",)),
    ],
)
def test_malformed_steps_are_rejected(step: ProvisioningStep) -> None:
    with pytest.raises(MalformedStepSpec):
        validate_step(step)


def test_remote_step_without_integrity_policy_is_malformed() -> None:
    step = ProvisioningStep.remote_script_install(
        "https://example.invalid/install.sh",
        integrity=None,  # type: ignore[arg-type]
        order=0,
    )

    with pytest.raises(MalformedStepSpec) as excinfo:
        validate_step(step)

    assert excinfo.value.hint is not None


def test_unknown_kind_is_malformed() -> None:
    step = ProvisioningStep(
        kind="compile",  # type: ignore[arg-type]
        payload=Cleanup(("/tmp",)),
        order=0,
    )

    with pytest.raises(MalformedStepSpec):
        validate_step(step)


def test_duplicate_orders_are_rejected() -> None:
    steps = [
        ProvisioningStep.package_install("curl", order=0),
        ProvisioningStep.package_install("jq", order=0),
    ]

    with pytest.raises(MalformedStepSpec) as excinfo:
        validate_build_inputs(BASE, steps)

    assert excinfo.value.context["previous_order"] == "0"


def test_base_and_steps_are_required() -> None:
    with pytest.raises(ValidationError):
        validate_build_inputs(BASE, [])
    with pytest.raises(ValidationError):
        validate_build_inputs(BaseImage(name=""), [ProvisioningStep.package_install("a", order=0)])
