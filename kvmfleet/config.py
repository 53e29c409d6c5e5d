"""Fleet configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Fleet settings loaded from environment variables."""

    # Fleet shape
    num_nodes: int = 1
    work_dir: str = "_work"
    base_image: str = "_work/clear-kvm-original.img"

    # Hypervisor. When start_script is set it is invoked with the overlay
    # image path and the VM index, otherwise a QEMU command line is built.
    start_script: str = ""
    qemu_binary: str = "qemu-system-x86_64"
    qemu_memory_mb: int = 2048
    qemu_cpus: int = 2
    qemu_firmware: str = ""  # e.g. _work/OVMF.fd
    qemu_extra_args: str = ""
    tap_prefix: str = "oimtap"

    # Network (VM i gets <subnet>.<2i+2>, gateway <subnet>.<2i+1>)
    subnet_prefix: str = "192.168.7"
    dns_server: str = "8.8.8.8"
    insecure_registry: str = "192.168.7.1:5000"

    # Proxy settings forwarded into the guests
    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""

    # Guest provisioning
    package_install_command: str = "swupd bundle-add cloud-native-basic"
    boot_settle_seconds: float = 5.0

    # Console timeouts (seconds)
    login_timeout: float = 300.0
    prompt_timeout: float = 60.0
    console_delimiter: str = ":"

    # Remote command execution (seconds)
    ssh_connect_timeout: float = 10.0
    ssh_reachable_timeout: float = 120.0
    remote_command_timeout: float = 600.0
    package_install_timeout: float = 1800.0

    # Fleet barrier (seconds)
    poll_interval: float = 1.0
    fleet_timeout: float = 3600.0
    liveness_interval: float = 0.5

    # Cluster assembly (seconds)
    kubeadm_init_flags: str = "--ignore-preflight-errors=SystemVerification"
    kubeadm_join_flags: str = "--ignore-preflight-errors=SystemVerification"
    cluster_poll_interval: float = 60.0
    cluster_ready_timeout: float = 1800.0
    master_label: str = "intel.com/oim=1"

    # Teardown (seconds)
    kill_grace_period: float = 5.0
    shutdown_timeout: float = 120.0

    # Observability
    log_level: str = "INFO"
    log_format: str = "text"  # text or json
    metrics_file: str = ""

    class Config:
        env_prefix = "KVMFLEET_"


settings = Settings()
