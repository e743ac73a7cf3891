# docs_workflow.py
# Build the crate documentation and publish it to gh-pages on pushes to main.
from __future__ import annotations

from gatedci import wf, job, sh, uses, on_push


def workflow():
    return wf(
        job(
            "rustdoc",
            uses("Checkout repository", "actions/checkout@v4.1.1"),
            sh(
                "Install Rustup",
                "if ! command -v rustup &>/dev/null; then "
                "(curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y); fi",
            ),
            sh("Install Rust toolchain", 'source "$HOME/.cargo/env"; rustup update --no-self-update stable'),
            sh("Build Documentation", 'source "$HOME/.cargo/env"; cargo doc --all'),
            uses(
                "Deploy Docs",
                "peaceiris/actions-gh-pages@v4.0.0",
                github_token="${{ secrets.GITHUB_TOKEN }}",
                publish_branch="gh-pages",
                publish_dir="./target/doc",
                force_orphan=True,
            ),
            if_="github.repository == 'kaist-cp/cs220'",
            runs_on=["self-hosted", "ubuntu-22.04"],
        ),
        name="rustdoc",
        on=on_push("main"),
        env={
            "CARGO_INCREMENTAL": 0,
            "CARGO_NET_RETRY": 10,
            "RUSTFLAGS": "-D warnings -W unreachable-pub",
            "RUSTUP_MAX_RETRIES": 10,
        },
    )
