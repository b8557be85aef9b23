# p2pclient.py
# ------------
# The P2P client component
# Handle user interaction, passes options through to the peer
from prettytable import PrettyTable, HRuleStyle

from libprotocol.libp2pproto import P2PTransportError

MENU_OPTIONS = [
    ["1", "Display Finger Table"],
    ["2", "Display Successor"],
    ["3", "Display Predecessor"],
    ["4", "Display Id"],
    ["5", "Show Files"],
    ["6", "Upload File"],
    ["7", "Leave Chord Ring"],
]


class P2PClient(object):

    def __init__(self, chord, input_func=input):
        self.chord = chord
        self.input = input_func

    def _render_user_menu(self):
        tab = PrettyTable(["No.", "Option"])
        tab.add_rows(MENU_OPTIONS)
        tab.hrules = HRuleStyle.ALL
        print("Chord P2P Peer %d" % (self.chord.get_identifier().id,))
        print(tab)

    def _process_user_option(self, user_option):
        """ Returns False once the user asked to leave. """
        if user_option == "1":
            self.chord.print_finger_table()
        elif user_option == "2":
            self.chord.print_successor()
        elif user_option == "3":
            self.chord.print_predecessor()
        elif user_option == "4":
            self.chord.print_id()
        elif user_option == "5":
            self.chord.print_files()
        elif user_option == "6":
            filepath = self.input('Enter filepath: ')
            try:
                file_id, owner = self.chord.upload_file(filepath)
            except (OSError, P2PTransportError) as err:
                print("An error occurred: %s" % (err,))
            else:
                print("File uploaded as %s to %s" % (file_id, owner))
        elif user_option == "7":
            self.chord.leave_network()
            return False
        return True

    def run(self):
        valid_options = [option[0] for option in MENU_OPTIONS]
        while 1:
            self._render_user_menu()
            user_option = self.input('Enter option: ')
            while user_option not in valid_options:
                user_option = self.input('Invalid option selected. Please try again: ')
            if not self._process_user_option(user_option):
                break
