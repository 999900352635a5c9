from narration_mixer.cli import main

main()
