# releaseci_workflow.py
# Release pipeline for a Rust crate: quality checks, artifact collection,
# v-tag release assets and a crates.io publish that dry-runs without a token.
from __future__ import annotations

from releaseci import job, on_tag, publish_job, sh, wf

DIST = "target/release-artifacts"
ASSETS = f"{DIST}/release"


def workflow():
    return wf(
        job(
            "check",
            sh("Prepare", f"mkdir -p {DIST}"),
            sh("Clippy", "cargo clippy --all-targets -- -W warnings -D warnings"),
            sh(
                "Test",
                f"cargo test --all-features > {DIST}/test-results.txt 2>&1; status=$?; "
                f"cat {DIST}/test-results.txt; exit $status",
            ),
            sh("Outputs", 'echo "test_results_url=${ARTIFACT_URL_BASE:-file://$PWD}/test-results.txt" >> "$RELEASECI_OUTPUT"'),
            files={"test-results": f"{DIST}/test-results.txt"},
        ),
        job(
            "check-msrv",
            sh("MSRV build", "cargo +1.72.1 check --all-features"),
        ),
        job(
            "coverage",
            sh("Coverage", f"cargo tarpaulin --all-features --out Html --output-dir {DIST}"),
            sh("Outputs", 'echo "test_coverage_url=file://$PWD/target/release-artifacts/tarpaulin-report.html" >> "$RELEASECI_OUTPUT"'),
            files={"code-coverage-html": f"{DIST}/tarpaulin-report.html"},
        ),
        job(
            "licenses",
            sh("License report", f"mkdir -p {DIST} && cargo about generate about.hbs > {DIST}/license-report.html"),
            sh("Outputs", 'echo "license_report_url=file://$PWD/target/release-artifacts/license-report.html" >> "$RELEASECI_OUTPUT"'),
            files={"license-report": f"{DIST}/license-report.html"},
        ),
        job(
            "release",
            sh(
                "Collect quality artifacts",
                f'printf "release_url=%s\\nlicense=%s\\ntesting=%s,%s\\n" '
                f'"$REF_NAME" "$NEEDS_LICENSES_OUTPUTS_LICENSE_REPORT_URL" '
                f'"$NEEDS_CHECK_OUTPUTS_TEST_RESULTS_URL" "$NEEDS_COVERAGE_OUTPUTS_TEST_COVERAGE_URL" '
                f"> {DIST}/quality-manifest.toml",
            ),
            needs=["check", "check-msrv", "coverage", "licenses"],
            files={
                "readme": "README.md",
                "quality-artifacts-manifest": f"{DIST}/quality-manifest.toml",
            },
        ),
        job(
            "tag_release_artifacts",
            sh(
                "Stage release assets",
                f"mkdir -p {ASSETS} && "
                f'cp "$ARTIFACT_LICENSE_REPORT_PATH" {ASSETS}/license-report.html && '
                f'cp "$ARTIFACT_TEST_RESULTS_PATH" {ASSETS}/test-results.txt && '
                f'cp "$ARTIFACT_CODE_COVERAGE_HTML_PATH" {ASSETS}/tarpaulin-report.html && '
                f"cp README.md {ASSETS}/README.md",
            ),
            sh("Attach release assets", f'gh release upload "$REF_NAME" {ASSETS}/* --clobber'),
            sh(
                "Collect quality artifacts",
                'release_url=$(gh release view "$REF_NAME" --json url -q .url) && '
                'download="${release_url%/tag/*}/download/$REF_NAME" && '
                'printf "release_url=%s\\nlicense=%s\\nreadme=%s\\ntesting=%s,%s\\n" '
                '"$release_url" "$download/license-report.html" "$download/README.md" '
                '"$download/test-results.txt" "$download/tarpaulin-report.html" '
                f"> {DIST}/release-quality-manifest.toml",
            ),
            sh("Attach quality manifest", f'gh release upload "$REF_NAME" {DIST}/release-quality-manifest.toml --clobber'),
            needs=["release"],
            when=on_tag("v*"),
            consumes=["license-report", "test-results", "code-coverage-html"],
            files={"release-quality-manifest": f"{DIST}/release-quality-manifest.toml"},
        ),
        publish_job(
            "cargo-publish",
            secret="CRATES_TOKEN",
            real='cargo publish --all-features --token "$CRATES_TOKEN"',
            dry_run="cargo publish --all-features --dry-run",
            needs=["tag_release_artifacts"],
        ),
    )
