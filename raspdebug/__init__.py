"""Raspberry Debugger: remote provisioning and deployment for Raspberry Pi.

Builds a .NET program on the workstation and runs/debugs it on a Raspberry
Pi reachable over SSH.

Quickstart::

    from raspdebug.deploy import DeploymentPipeline
    from raspdebug.project import ProjectProperties
    from raspdebug.store import ConnectionStore

    project = ProjectProperties.from_project_file("Blinkie/Blinkie.csproj")
    info = ConnectionStore().get_default()
    result = await DeploymentPipeline().deploy(project, info)
"""

__version__ = "1.0.0"
