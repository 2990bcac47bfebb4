from garm_provider_incus.cli import main

main()
